"""Combination universe enumeration and attribute table."""

from __future__ import annotations

from dataclasses import dataclass
from functools import reduce
from itertools import combinations
import logging
from typing import Any, Iterable

import polars as pl

from . import attributes


logger = logging.getLogger("combo_funnel.universe")

ATTRIBUTE_COLUMNS: tuple[str, ...] = (
    "sum_value",
    "span_value",
    "zone_ratio",
    "odd_even_ratio",
    "ac_value",
    "consecutive_groups",
    "max_consecutive_length",
)


class UniverseSpecError(ValueError):
    """Raised when a universe definition is inconsistent."""


@dataclass(frozen=True)
class UniverseSpec:
    pool_size: int = 35
    arity: int = 5
    zones: tuple[tuple[int, int], ...] = ()

    def __post_init__(self) -> None:
        if int(self.pool_size) < 1:
            raise UniverseSpecError(f"pool_size must be >= 1; got {self.pool_size}")
        if not 1 <= int(self.arity) <= int(self.pool_size):
            raise UniverseSpecError(f"arity must be in 1..{self.pool_size}; got {self.arity}")
        zones = tuple((int(low), int(high)) for low, high in (self.zones or ((1, self.pool_size),)))
        expected = 1
        for low, high in zones:
            if low != expected or high < low:
                raise UniverseSpecError(f"zones must tile 1..{self.pool_size} contiguously; got {list(zones)}")
            expected = high + 1
        if expected != int(self.pool_size) + 1:
            raise UniverseSpecError(f"zones must end at pool_size {self.pool_size}; got {list(zones)}")
        object.__setattr__(self, "zones", zones)


class CombinationUniverse:
    """All `arity`-of-`pool_size` combinations with stable 1-based ids in lexicographic order."""

    def __init__(self, spec: UniverseSpec) -> None:
        self.spec = spec
        self._numbers: list[tuple[int, ...]] = list(combinations(range(1, spec.pool_size + 1), spec.arity))
        rows: dict[str, list[Any]] = {"combination_id": [], **{name: [] for name in ATTRIBUTE_COLUMNS}}
        for idx, numbers in enumerate(self._numbers, start=1):
            rows["combination_id"].append(idx)
            rows["sum_value"].append(attributes.sum_value(numbers))
            rows["span_value"].append(attributes.span_value(numbers))
            rows["zone_ratio"].append(attributes.zone_ratio(numbers, spec.zones))
            rows["odd_even_ratio"].append(attributes.odd_even_ratio(numbers))
            rows["ac_value"].append(attributes.ac_value(numbers))
            rows["consecutive_groups"].append(attributes.consecutive_groups(numbers))
            rows["max_consecutive_length"].append(attributes.max_consecutive_length(numbers))
        self.table = pl.DataFrame(rows).with_columns(
            [
                pl.col("combination_id").cast(pl.Int64),
                pl.col("sum_value").cast(pl.Int32),
                pl.col("span_value").cast(pl.Int32),
                pl.col("ac_value").cast(pl.Int32),
                pl.col("consecutive_groups").cast(pl.Int32),
                pl.col("max_consecutive_length").cast(pl.Int32),
            ]
        )
        self._ids = frozenset(range(1, len(self._numbers) + 1))
        by_number: dict[int, set[int]] = {number: set() for number in range(1, spec.pool_size + 1)}
        for idx, numbers in enumerate(self._numbers, start=1):
            for number in numbers:
                by_number[number].add(idx)
        self._by_number = {number: frozenset(ids) for number, ids in by_number.items()}
        logger.debug(
            "Universe built pool=%s arity=%s size=%s", spec.pool_size, spec.arity, len(self._numbers)
        )

    @property
    def size(self) -> int:
        return len(self._numbers)

    @property
    def arity(self) -> int:
        return self.spec.arity

    def ids(self) -> frozenset[int]:
        return self._ids

    def numbers_of(self, combination_id: int) -> tuple[int, ...]:
        idx = int(combination_id)
        if idx < 1 or idx > len(self._numbers):
            raise KeyError(f"combination id out of range: {combination_id}")
        return self._numbers[idx - 1]

    def attributes_of(self, combination_id: int) -> dict[str, Any]:
        rows = self.table.filter(pl.col("combination_id") == int(combination_id)).to_dicts()
        if not rows:
            raise KeyError(f"combination id out of range: {combination_id}")
        return rows[0]

    def filter_ids(self, candidate_ids: Iterable[int], predicate: pl.Expr) -> frozenset[int]:
        """Ids from `candidate_ids` whose attribute row satisfies `predicate`."""
        candidates = list(candidate_ids)
        if not candidates:
            return frozenset()
        retained = self.table.filter(pl.col("combination_id").is_in(candidates) & predicate)
        return frozenset(retained.get_column("combination_id").to_list())

    def ids_containing(self, numbers: Iterable[int]) -> frozenset[int]:
        """Ids of every combination that contains all of `numbers`."""
        wanted = sorted(set(int(number) for number in numbers))
        if not wanted:
            return self._ids
        for number in wanted:
            if number not in self._by_number:
                return frozenset()
        return reduce(lambda acc, number: acc & self._by_number[number], wanted[1:], self._by_number[wanted[0]])
