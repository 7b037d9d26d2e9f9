"""The ten funnel stages, in their fixed order."""

from __future__ import annotations

from dataclasses import dataclass
from functools import reduce
from itertools import combinations
import operator
from typing import Any, Iterable, Optional, Sequence

import polars as pl

from combo_funnel.classification import ClassificationEntry, classes_matching
from combo_funnel.periods import PeriodLedger
from combo_funnel.universe import CombinationUniverse

from .criteria import (
    CoOccurrenceFilter,
    ConflictFilter,
    ExclusionCriteria,
    FilterMode,
    MembershipFilter,
    RangeFilter,
    ValueSetFilter,
)


@dataclass(frozen=True)
class StageContext:
    """Everything a stage may read for one period. Never mutated by a stage."""

    universe: CombinationUniverse
    ledger: PeriodLedger
    base_label: str
    entry: ClassificationEntry
    selection: tuple[str, ...]
    criteria: ExclusionCriteria


class Stage:
    index: int = 0
    name: str = ""

    def configured(self, ctx: StageContext) -> bool:
        return True

    def apply(self, ctx: StageContext, candidate_ids: frozenset[int]) -> frozenset[int]:
        raise NotImplementedError

    def reasons(self, ctx: StageContext, excluded_ids: Sequence[int]) -> dict[int, str]:
        return {combination_id: f"excluded by {self.name}" for combination_id in excluded_ids}


class ClassificationSelectionStage(Stage):
    """Seeds the candidate set with the union of the selected classes."""

    index = 1
    name = "classification_selection"

    def apply(self, ctx: StageContext, candidate_ids: frozenset[int]) -> frozenset[int]:
        return candidate_ids & classes_matching(ctx.entry, ctx.selection)

    def reasons(self, ctx: StageContext, excluded_ids: Sequence[int]) -> dict[int, str]:
        wanted = set(excluded_ids)
        class_of: dict[int, str] = {}
        for key, ids in ctx.entry.classes.items():
            for combination_id in wanted & ids:
                class_of[combination_id] = key
        return {
            combination_id: f"class {class_of.get(combination_id, '?')} not selected"
            for combination_id in excluded_ids
        }


class AttributeStage(Stage):
    """Stage driven by one precomputed attribute column and one criteria field."""

    column: str = ""
    criteria_field: str = ""

    def _filter(self, ctx: StageContext) -> Any:
        return getattr(ctx.criteria, self.criteria_field)

    def configured(self, ctx: StageContext) -> bool:
        return self._filter(ctx) is not None

    def apply(self, ctx: StageContext, candidate_ids: frozenset[int]) -> frozenset[int]:
        spec = self._filter(ctx)
        if spec is None:
            return candidate_ids
        return ctx.universe.filter_ids(candidate_ids, retain_expression(self.column, spec))

    def reasons(self, ctx: StageContext, excluded_ids: Sequence[int]) -> dict[int, str]:
        spec = self._filter(ctx)
        if not excluded_ids or spec is None:
            return {}
        rows = ctx.universe.table.filter(pl.col("combination_id").is_in(list(excluded_ids))).select(
            ["combination_id", self.column]
        )
        values = dict(zip(rows.get_column("combination_id").to_list(), rows.get_column(self.column).to_list()))
        verb = "not in allowed" if spec.mode == FilterMode.INCLUDE else "in excluded"
        described = _describe(spec)
        return {
            combination_id: f"{self.column}={values.get(combination_id)} {verb} {described}"
            for combination_id in excluded_ids
        }


class ZoneRatioStage(AttributeStage):
    index = 2
    name = "zone_ratio"
    column = "zone_ratio"
    criteria_field = "zone_ratio"


class SumRangeStage(AttributeStage):
    index = 3
    name = "sum_range"
    column = "sum_value"
    criteria_field = "sum_range"


class SpanRangeStage(AttributeStage):
    index = 4
    name = "span_range"
    column = "span_value"
    criteria_field = "span_range"


class ParityRatioStage(AttributeStage):
    index = 5
    name = "parity_ratio"
    column = "odd_even_ratio"
    criteria_field = "parity_ratio"


class AcValueStage(AttributeStage):
    index = 6
    name = "ac_value"
    column = "ac_value"
    criteria_field = "ac_value"


class ConsecutiveGroupsStage(AttributeStage):
    index = 7
    name = "consecutive_groups"
    column = "consecutive_groups"
    criteria_field = "consecutive_groups"


class MaxConsecutiveLengthStage(AttributeStage):
    index = 8
    name = "max_consecutive_length"
    column = "max_consecutive_length"
    criteria_field = "max_consecutive_length"


class ConflictPairsStage(Stage):
    index = 9
    name = "conflict_pairs"

    def configured(self, ctx: StageContext) -> bool:
        return ctx.criteria.conflict_pairs is not None

    def apply(self, ctx: StageContext, candidate_ids: frozenset[int]) -> frozenset[int]:
        spec: Optional[ConflictFilter] = ctx.criteria.conflict_pairs
        if spec is None:
            return candidate_ids
        flagged = _union(ctx.universe.ids_containing(pair) for pair in spec.pairs)
        return candidate_ids - flagged

    def reasons(self, ctx: StageContext, excluded_ids: Sequence[int]) -> dict[int, str]:
        spec = ctx.criteria.conflict_pairs
        if spec is None:
            return {}
        out: dict[int, str] = {}
        for combination_id in excluded_ids:
            numbers = set(ctx.universe.numbers_of(combination_id))
            hit = next((pair for pair in spec.pairs if set(pair) <= numbers), None)
            out[combination_id] = f"contains conflict pair {_format_tuple(hit)}" if hit else "contains conflict pair"
        return out


class CoOccurrenceStage(Stage):
    index = 10
    name = "cooccurrence"

    def configured(self, ctx: StageContext) -> bool:
        return ctx.criteria.cooccurrence is not None

    def historical_tuples(self, ctx: StageContext) -> dict[tuple[int, ...], str]:
        """Sub-tuples drawn inside the lookback window, mapped to the latest period that drew them."""
        spec: Optional[CoOccurrenceFilter] = ctx.criteria.cooccurrence
        if spec is None:
            return {}
        window = ctx.ledger.window_ending_at(ctx.base_label, spec.lookback, spec.count_mode)
        seen: dict[tuple[int, ...], str] = {}
        for period in window:
            drawn = period.drawn_numbers or ()
            for size in spec.tuple_sizes:
                for subset in combinations(drawn, size):
                    seen[subset] = period.label
        return seen

    def apply(self, ctx: StageContext, candidate_ids: frozenset[int]) -> frozenset[int]:
        seen = self.historical_tuples(ctx)
        if not seen:
            return candidate_ids
        flagged = _union(ctx.universe.ids_containing(subset) for subset in seen)
        return candidate_ids - flagged

    def reasons(self, ctx: StageContext, excluded_ids: Sequence[int]) -> dict[int, str]:
        seen = self.historical_tuples(ctx)
        out: dict[int, str] = {}
        for combination_id in excluded_ids:
            numbers = set(ctx.universe.numbers_of(combination_id))
            hit = next((subset for subset in seen if set(subset) <= numbers), None)
            if hit is None:
                out[combination_id] = "co-occurred within lookback window"
            else:
                out[combination_id] = f"shares {_format_tuple(hit)} with period {seen[hit]}"
        return out


STAGES: tuple[Stage, ...] = (
    ClassificationSelectionStage(),
    ZoneRatioStage(),
    SumRangeStage(),
    SpanRangeStage(),
    ParityRatioStage(),
    AcValueStage(),
    ConsecutiveGroupsStage(),
    MaxConsecutiveLengthStage(),
    ConflictPairsStage(),
    CoOccurrenceStage(),
)

STAGE_NAMES: tuple[str, ...] = tuple(stage.name for stage in STAGES)


def stage_name(index: int) -> str:
    if not 1 <= int(index) <= len(STAGES):
        raise KeyError(f"unknown stage index: {index}")
    return STAGES[int(index) - 1].name


def retain_expression(column: str, spec: MembershipFilter | RangeFilter | ValueSetFilter) -> pl.Expr:
    if isinstance(spec, RangeFilter):
        matched = reduce(
            operator.or_,
            [pl.col(column).is_between(item.min, item.max, closed="both") for item in spec.ranges],
        )
    else:
        matched = pl.col(column).is_in(list(spec.values))
    if spec.mode == FilterMode.EXCLUDE:
        return ~matched
    return matched


def _describe(spec: MembershipFilter | RangeFilter | ValueSetFilter) -> str:
    if isinstance(spec, RangeFilter):
        return "[" + ", ".join(f"{item.min}-{item.max}" for item in spec.ranges) + "]"
    return "[" + ", ".join(str(value) for value in spec.values) + "]"


def _union(sets: Iterable[frozenset[int]]) -> frozenset[int]:
    merged: set[int] = set()
    for item in sets:
        merged |= item
    return frozenset(merged)


def _format_tuple(values: Iterable[int] | None) -> str:
    if values is None:
        return ""
    return "-".join(f"{int(value):02d}" for value in values)
