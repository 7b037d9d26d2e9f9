"""Outcome scoring of a paired output against a drawn period."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
import logging
from typing import Any, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from combo_funnel.periods import Period
from combo_funnel.universe import CombinationUniverse

from .pairing import PairedOutput, PairingPolicy


logger = logging.getLogger("combo_funnel.scoring")

PREDICTED_UNSCORED = "PREDICTED_UNSCORED"
SCORED = "SCORED"


class PrizeTier(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., min_length=1)
    amount: int = Field(..., ge=0)
    hits: list[tuple[int, int]] = Field(..., min_length=1)


# (primary hits, secondary hits) per tier for the 5+2 game.
DEFAULT_PRIZE_TABLE: tuple[PrizeTier, ...] = (
    PrizeTier(name="first", amount=10_000_000, hits=[(5, 2)]),
    PrizeTier(name="second", amount=100_000, hits=[(5, 1)]),
    PrizeTier(name="third", amount=10_000, hits=[(5, 0)]),
    PrizeTier(name="fourth", amount=3_000, hits=[(4, 2)]),
    PrizeTier(name="fifth", amount=300, hits=[(4, 1), (3, 2)]),
    PrizeTier(name="sixth", amount=200, hits=[(4, 0), (3, 1), (2, 2)]),
    PrizeTier(name="seventh", amount=100, hits=[(3, 0), (2, 1), (1, 2)]),
    PrizeTier(name="eighth", amount=15, hits=[(2, 0), (1, 1), (0, 2)]),
    PrizeTier(name="ninth", amount=5, hits=[(1, 0), (0, 1)]),
)


@dataclass(frozen=True)
class OutcomeScore:
    status: str
    tier_counts: dict[str, int] = field(default_factory=dict)
    total_prize: Optional[int] = None
    primary_hit_distribution: dict[int, int] = field(default_factory=dict)

    @property
    def is_scored(self) -> bool:
        return self.status == SCORED

    def as_dict(self) -> dict[str, Any]:
        if not self.is_scored:
            return {"status": self.status}
        return {
            "status": self.status,
            "tier_counts": dict(self.tier_counts),
            "total_prize": self.total_prize,
            "primary_hit_distribution": {str(key): value for key, value in self.primary_hit_distribution.items()},
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "OutcomeScore":
        status = str(payload.get("status") or PREDICTED_UNSCORED)
        if status != SCORED:
            return cls(status=status)
        return cls(
            status=status,
            tier_counts={str(key): int(value) for key, value in (payload.get("tier_counts") or {}).items()},
            total_prize=int(payload.get("total_prize") or 0),
            primary_hit_distribution={
                int(key): int(value) for key, value in (payload.get("primary_hit_distribution") or {}).items()
            },
        )


def unscored() -> OutcomeScore:
    return OutcomeScore(status=PREDICTED_UNSCORED)


class OutcomeScorer:
    def __init__(
        self,
        primary: CombinationUniverse,
        secondary: CombinationUniverse,
        prize_table: Sequence[PrizeTier] = DEFAULT_PRIZE_TABLE,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.prize_table = tuple(prize_table)
        self._tier_of: dict[tuple[int, int], PrizeTier] = {}
        for tier in self.prize_table:
            for hits in tier.hits:
                self._tier_of[(int(hits[0]), int(hits[1]))] = tier

    def score(self, paired: PairedOutput, outcome: Period | None) -> OutcomeScore:
        """Tier counts and total prize, or the unscored marker when there is no outcome."""
        if outcome is None or not outcome.is_drawn:
            return unscored()
        drawn = frozenset(outcome.drawn_numbers or ())
        bonus = frozenset(outcome.drawn_bonus or ())
        primary_hits = Counter(self._hits(self.primary, primary_id, drawn) for primary_id in paired.primary_ids)
        combined: Counter[tuple[int, int]] = Counter()
        if paired.policy == PairingPolicy.CARTESIAN_PRODUCT:
            # Every primary meets every secondary, so pair hit counts are products.
            secondary_hits = Counter(
                self._hits(self.secondary, secondary_id, bonus) for secondary_id in paired.secondary_ids
            )
            for red, red_count in primary_hits.items():
                for blue, blue_count in secondary_hits.items():
                    combined[(red, blue)] += red_count * blue_count
        else:
            for primary_id, secondary_id in paired.pairs():
                combined[
                    (self._hits(self.primary, primary_id, drawn), self._hits(self.secondary, secondary_id, bonus))
                ] += 1
        tier_counts = {tier.name: 0 for tier in self.prize_table}
        total = 0
        for hits, count in combined.items():
            tier = self._tier_of.get(hits)
            if tier is None:
                continue
            tier_counts[tier.name] += count
            total += tier.amount * count
        return OutcomeScore(
            status=SCORED,
            tier_counts=tier_counts,
            total_prize=total,
            primary_hit_distribution=dict(sorted(primary_hits.items())),
        )

    @staticmethod
    def _hits(universe: CombinationUniverse, combination_id: int, drawn: frozenset[int]) -> int:
        return sum(1 for number in universe.numbers_of(combination_id) if number in drawn)
