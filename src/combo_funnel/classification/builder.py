"""Builds hot/warm/cold classification entries from omission counts at the base period."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable

from combo_funnel.errors import NoPredecessorError, PeriodNotFoundError
from combo_funnel.periods import PeriodLedger
from combo_funnel.universe import CombinationUniverse

from .contracts import ClassificationEntry, PairKey
from .store import ClassificationStore


logger = logging.getLogger("combo_funnel.classification.builder")


@dataclass(frozen=True)
class TemperatureThresholds:
    """A number is hot when its omission count is <= hot_max, warm when <= warm_max, else cold."""

    hot_max: int = 4
    warm_max: int = 9

    def __post_init__(self) -> None:
        if int(self.hot_max) < 0:
            raise ValueError("hot_max must be >= 0")
        if int(self.warm_max) <= int(self.hot_max):
            raise ValueError("warm_max must be greater than hot_max")

    def bucket(self, omission: int) -> int:
        if omission <= self.hot_max:
            return 0
        if omission <= self.warm_max:
            return 1
        return 2


@dataclass(frozen=True)
class BuildSummary:
    generated: int
    skipped: int
    errors: dict[str, str]


class ClassificationBuilder:
    def __init__(self, universe: CombinationUniverse, thresholds: TemperatureThresholds | None = None) -> None:
        self.universe = universe
        self.thresholds = thresholds or TemperatureThresholds()

    def build_entry(self, ledger: PeriodLedger, pair: PairKey) -> ClassificationEntry:
        omission = ledger.omission_counts(pair.base_label, self.universe.spec.pool_size)
        bucket_of = {number: self.thresholds.bucket(count) for number, count in omission.items()}
        classes: dict[str, list[int]] = {}
        for combination_id in range(1, self.universe.size + 1):
            counts = [0, 0, 0]
            for number in self.universe.numbers_of(combination_id):
                counts[bucket_of[number]] += 1
            classes.setdefault(f"{counts[0]}:{counts[1]}:{counts[2]}", []).append(combination_id)
        return ClassificationEntry.from_payload(pair=pair, arity=self.universe.arity, classes=classes)

    def build_for_targets(
        self,
        ledger: PeriodLedger,
        targets: Iterable[str],
        store: ClassificationStore,
        *,
        force: bool = False,
    ) -> BuildSummary:
        """Build and store entries for each target's (base, target) pair.

        A target that is not yet drawn is paired with the latest drawn period.
        """
        generated = 0
        skipped = 0
        errors: dict[str, str] = {}
        latest = ledger.latest_drawn()
        for target in targets:
            try:
                if ledger.is_drawn(target):
                    base = ledger.period_before(target)
                else:
                    base = latest
            except (NoPredecessorError, PeriodNotFoundError) as exc:
                errors[str(target)] = str(exc)
                logger.warning("Classification build skipped target=%s reason=%s", target, exc)
                continue
            pair = PairKey(base_label=base.label, target_label=target)
            if not force and store.exists(pair):
                skipped += 1
                continue
            store.put(self.build_entry(ledger, pair))
            generated += 1
            logger.info("Classification entry built pair=%s", pair.wire_key)
        return BuildSummary(generated=generated, skipped=skipped, errors=errors)
