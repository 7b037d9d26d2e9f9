"""Candidate funnel runner and criteria validation."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Iterable, Optional, Sequence

from combo_funnel.classification import (
    ClassificationContractError,
    ClassificationEntry,
    format_class_key,
    parse_class_key,
)
from combo_funnel.errors import ConfigurationError
from combo_funnel.periods import PeriodLedger
from combo_funnel.universe import CombinationUniverse

from .criteria import ExclusionCriteria, SecondaryCriteria
from .stages import STAGES, StageContext, retain_expression


logger = logging.getLogger("combo_funnel.funnel")

DEFAULT_SAMPLE_STAGES: tuple[int, ...] = (7, 8, 9, 10)
DEFAULT_SAMPLE_LIMIT = 100


class FunnelInvariantError(RuntimeError):
    """Raised when stage outcomes do not account for every excluded candidate."""


class StageExecutionError(RuntimeError):
    """A stage failed for one period; carries the stage so the period error can name it."""

    def __init__(self, stage_index: int, stage_name: str, message: str) -> None:
        super().__init__(f"stage {stage_index} ({stage_name}) failed: {message}")
        self.stage_index = stage_index
        self.stage_name = stage_name


@dataclass(frozen=True)
class StageOutcome:
    stage_index: int
    stage_name: str
    configured: bool
    input_count: int
    retained_count: int
    excluded_count: int
    excluded_ids: tuple[int, ...] = ()
    excluded_sample: dict[int, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "stage_index": self.stage_index,
            "stage_name": self.stage_name,
            "configured": self.configured,
            "input_count": self.input_count,
            "retained_count": self.retained_count,
            "excluded_count": self.excluded_count,
        }


@dataclass(frozen=True)
class FunnelRun:
    initial_count: int
    retained_ids: frozenset[int]
    outcomes: tuple[StageOutcome, ...]

    @property
    def final_count(self) -> int:
        return len(self.retained_ids)

    @property
    def stage_counts(self) -> dict[str, int]:
        return {outcome.stage_name: outcome.excluded_count for outcome in self.outcomes}


class CandidateFunnel:
    """Runs the fixed stage sequence over one period's classification entry.

    `record_excluded_ids` keeps every excluded id on the outcome so the
    exclusion ledger can answer point queries exactly. Reasons are sampled
    only for `sample_stages`, lowest ids first, up to `sample_limit`.
    """

    def __init__(
        self,
        universe: CombinationUniverse,
        *,
        sample_stages: Iterable[int] = DEFAULT_SAMPLE_STAGES,
        sample_limit: int = DEFAULT_SAMPLE_LIMIT,
        record_excluded_ids: bool = True,
    ) -> None:
        if int(sample_limit) < 0:
            raise ConfigurationError("sample_limit must be >= 0")
        self.universe = universe
        self.sample_stages = frozenset(int(index) for index in sample_stages)
        self.sample_limit = int(sample_limit)
        self.record_excluded_ids = bool(record_excluded_ids)

    def run(
        self,
        *,
        entry: ClassificationEntry,
        selection: Sequence[str],
        criteria: ExclusionCriteria,
        ledger: PeriodLedger,
        base_label: str,
    ) -> FunnelRun:
        ctx = StageContext(
            universe=self.universe,
            ledger=ledger,
            base_label=base_label,
            entry=entry,
            selection=tuple(selection),
            criteria=criteria,
        )
        current = self.universe.ids()
        initial_count = len(current)
        outcomes: list[StageOutcome] = []
        for stage in STAGES:
            configured = stage.configured(ctx)
            try:
                retained = stage.apply(ctx, current) if configured else current
            except (ValueError, LookupError) as exc:
                raise StageExecutionError(stage.index, stage.name, str(exc)) from exc
            if not retained <= current:
                raise FunnelInvariantError(f"stage {stage.name} returned ids outside its input")
            excluded = sorted(current - retained)
            sample: dict[int, str] = {}
            if excluded and stage.index in self.sample_stages and self.sample_limit:
                sample = stage.reasons(ctx, excluded[: self.sample_limit])
            outcomes.append(
                StageOutcome(
                    stage_index=stage.index,
                    stage_name=stage.name,
                    configured=configured,
                    input_count=len(current),
                    retained_count=len(retained),
                    excluded_count=len(excluded),
                    excluded_ids=tuple(excluded) if self.record_excluded_ids else (),
                    excluded_sample=sample,
                )
            )
            current = retained
        run = FunnelRun(initial_count=initial_count, retained_ids=current, outcomes=tuple(outcomes))
        _check_invariants(run)
        logger.debug(
            "Funnel run base=%s target=%s initial=%s final=%s",
            base_label,
            entry.pair.target_label,
            initial_count,
            run.final_count,
        )
        return run


def _check_invariants(run: FunnelRun) -> None:
    previous = run.initial_count
    for outcome in run.outcomes:
        if outcome.input_count != previous:
            raise FunnelInvariantError(f"stage {outcome.stage_name} input {outcome.input_count} != {previous}")
        if outcome.excluded_count != outcome.input_count - outcome.retained_count:
            raise FunnelInvariantError(f"stage {outcome.stage_name} excluded count does not match size change")
        previous = outcome.retained_count
    total = sum(outcome.excluded_count for outcome in run.outcomes)
    if total != run.initial_count - run.final_count:
        raise FunnelInvariantError(f"total excluded {total} != {run.initial_count} - {run.final_count}")


def validate_selection(selection: Sequence[str], *, arity: int) -> tuple[str, ...]:
    if not selection:
        raise ConfigurationError("classification selection must name at least one class")
    try:
        return tuple(format_class_key(parse_class_key(key, arity=arity)) for key in selection)
    except ClassificationContractError as exc:
        raise ConfigurationError(str(exc)) from exc


def validate_criteria(criteria: ExclusionCriteria, universe: CombinationUniverse) -> None:
    """Checks that need the universe shape; field-level checks live on the models."""
    arity = universe.arity
    pool_size = universe.spec.pool_size
    if criteria.zone_ratio is not None:
        for value in criteria.zone_ratio.values:
            _check_ratio("zone_ratio", value, parts=len(universe.spec.zones), total=arity)
    if criteria.parity_ratio is not None:
        for value in criteria.parity_ratio.values:
            _check_ratio("parity_ratio", value, parts=2, total=arity)
    if criteria.conflict_pairs is not None:
        for pair in criteria.conflict_pairs.pairs:
            if any(not 1 <= number <= pool_size for number in pair):
                raise ConfigurationError(f"conflict pair {pair} outside pool 1..{pool_size}")
    if criteria.cooccurrence is not None:
        too_large = [size for size in criteria.cooccurrence.tuple_sizes if size > arity]
        if too_large:
            raise ConfigurationError(f"cooccurrence tuple_sizes {too_large} exceed arity {arity}")


def _check_ratio(name: str, value: str, *, parts: int, total: int) -> None:
    pieces = value.split(":")
    if len(pieces) != parts or not all(piece.isdigit() for piece in pieces):
        raise ConfigurationError(f"{name} value {value!r} must be {parts} colon-separated integers")
    if sum(int(piece) for piece in pieces) != total:
        raise ConfigurationError(f"{name} value {value!r} must sum to {total}")


def filter_secondary(universe: CombinationUniverse, criteria: Optional[SecondaryCriteria]) -> frozenset[int]:
    """Retained secondary-pool ids; no criteria keeps the whole pool."""
    retained = universe.ids()
    if criteria is None:
        return retained
    if criteria.sum_range is not None:
        retained = universe.filter_ids(retained, retain_expression("sum_value", criteria.sum_range))
    return retained - frozenset(criteria.exclude_ids)
