from __future__ import annotations

import polars as pl
import pytest

from combo_funnel.universe import CombinationUniverse, UniverseSpec, UniverseSpecError
from combo_funnel.universe import attributes


def _small_universe() -> CombinationUniverse:
    return CombinationUniverse(UniverseSpec(pool_size=12, arity=5, zones=((1, 4), (5, 8), (9, 12))))


def test_attribute_functions() -> None:
    numbers = (1, 2, 3, 7, 12)
    assert attributes.sum_value(numbers) == 25
    assert attributes.span_value(numbers) == 11
    assert attributes.zone_ratio(numbers, ((1, 4), (5, 8), (9, 12))) == "3:1:1"
    assert attributes.odd_even_ratio(numbers) == "3:2"
    assert attributes.run_lengths(numbers) == [3, 1, 1]
    assert attributes.consecutive_groups((1, 2, 5, 6, 9)) == 2
    assert attributes.max_consecutive_length((1, 2, 5, 6, 9)) == 2
    assert attributes.max_consecutive_length((1, 3, 5, 7, 9)) == 1


def test_ac_value_counts_distinct_differences() -> None:
    # Differences of 1,2,3,4,5: {1,2,3,4} -> 4 - 4 = 0.
    assert attributes.ac_value((1, 2, 3, 4, 5)) == 0
    # Differences of 1,2,4,8,16: all ten distinct -> 10 - 4 = 6.
    assert attributes.ac_value((1, 2, 4, 8, 16)) == 6


def test_universe_ids_are_one_based_lexicographic() -> None:
    universe = _small_universe()
    assert universe.size == 792
    assert universe.numbers_of(1) == (1, 2, 3, 4, 5)
    assert universe.numbers_of(792) == (8, 9, 10, 11, 12)
    assert universe.ids() == frozenset(range(1, 793))
    with pytest.raises(KeyError):
        universe.numbers_of(0)


def test_attribute_table_matches_attribute_functions() -> None:
    universe = _small_universe()
    row = universe.attributes_of(1)
    assert row["sum_value"] == 15
    assert row["zone_ratio"] == "4:1:0"
    assert row["odd_even_ratio"] == "3:2"
    assert row["consecutive_groups"] == 1
    assert row["max_consecutive_length"] == 5


def test_filter_ids_applies_predicate_to_candidates_only() -> None:
    universe = _small_universe()
    retained = universe.filter_ids([1, 2, 3], pl.col("sum_value") <= 16)
    assert retained == frozenset({1, 2})
    assert universe.filter_ids([], pl.col("sum_value") > 0) == frozenset()


def test_ids_containing_intersects_number_index() -> None:
    universe = _small_universe()
    with_one_and_two = universe.ids_containing((1, 2))
    assert len(with_one_and_two) == 120
    assert all({1, 2} <= set(universe.numbers_of(idx)) for idx in with_one_and_two)
    assert universe.ids_containing(()) == universe.ids()
    assert universe.ids_containing((13,)) == frozenset()


def test_universe_spec_validation() -> None:
    with pytest.raises(UniverseSpecError):
        UniverseSpec(pool_size=12, arity=13)
    with pytest.raises(UniverseSpecError):
        UniverseSpec(pool_size=12, arity=5, zones=((1, 4), (6, 12)))
    with pytest.raises(UniverseSpecError):
        UniverseSpec(pool_size=12, arity=5, zones=((1, 4), (5, 10)))
    assert UniverseSpec(pool_size=12, arity=2, zones=()).zones == ((1, 12),)


def test_default_zones_cover_any_pool_size() -> None:
    secondary = CombinationUniverse(UniverseSpec(pool_size=12, arity=2))
    assert secondary.spec.zones == ((1, 12),)
    assert secondary.size == 66
    assert UniverseSpec().zones == ((1, 35),)
