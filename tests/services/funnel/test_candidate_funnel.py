from __future__ import annotations

import pydantic
import pytest

from combo_funnel.classification import ClassificationEntry, PairKey
from combo_funnel.errors import ConfigurationError
from combo_funnel.funnel import (
    CandidateFunnel,
    CoOccurrenceFilter,
    ConflictFilter,
    ExclusionCriteria,
    MembershipFilter,
    NumericRange,
    RangeFilter,
    SecondaryCriteria,
    StageExecutionError,
    STAGE_NAMES,
    filter_secondary,
    stage_name,
    validate_criteria,
    validate_selection,
)
from combo_funnel.periods import Period, PeriodLedger
from combo_funnel.universe import CombinationUniverse, UniverseSpec


UNIVERSE = CombinationUniverse(UniverseSpec(pool_size=12, arity=5, zones=((1, 4), (5, 8), (9, 12))))


def _ledger() -> PeriodLedger:
    return PeriodLedger(
        [
            Period(sequence_id=1, label="25001", drawn_numbers=(1, 2, 3, 4, 5)),
            Period(sequence_id=2, label="25002", drawn_numbers=(8, 9, 10, 11, 12)),
            Period(sequence_id=3, label="25003", drawn_numbers=(1, 4, 6, 9, 11)),
            Period(sequence_id=4, label="25004"),
        ]
    )


def _entry(target: str = "25003", base: str = "25002", hot_ids: int = 792) -> ClassificationEntry:
    ids = sorted(UNIVERSE.ids())
    classes = {"5:0:0": ids[:hot_ids]}
    if hot_ids < len(ids):
        classes["4:1:0"] = ids[hot_ids:]
    return ClassificationEntry.from_payload(pair=PairKey(base, target), arity=5, classes=classes)


def _run(criteria: ExclusionCriteria, *, base: str = "25002", funnel: CandidateFunnel | None = None, **entry_kw):
    runner = funnel or CandidateFunnel(UNIVERSE)
    return runner.run(
        entry=_entry(base=base, **entry_kw),
        selection=["5:0:0"],
        criteria=criteria,
        ledger=_ledger(),
        base_label=base,
    )


def _id_of(*numbers: int) -> int:
    (combination_id,) = UNIVERSE.ids_containing(numbers)
    return combination_id


def test_unconfigured_stages_pass_everything_through() -> None:
    run = _run(ExclusionCriteria())
    assert run.initial_count == 792
    assert run.final_count == 792
    assert [outcome.stage_name for outcome in run.outcomes] == list(STAGE_NAMES)
    assert [outcome.configured for outcome in run.outcomes] == [True] + [False] * 9
    assert all(outcome.excluded_count == 0 for outcome in run.outcomes)


def test_classification_selection_seeds_candidates() -> None:
    run = _run(ExclusionCriteria(), hot_ids=100)
    first = run.outcomes[0]
    assert (first.input_count, first.retained_count, first.excluded_count) == (792, 100, 692)
    assert run.retained_ids == frozenset(range(1, 101))


def test_sum_range_keeps_only_matching_sums() -> None:
    criteria = ExclusionCriteria(sum_range=RangeFilter(ranges=[NumericRange(min=15, max=15)]))
    run = _run(criteria)
    assert run.retained_ids == frozenset({1})
    assert run.stage_counts["sum_range"] == 791


def test_exclude_mode_inverts_membership() -> None:
    criteria = ExclusionCriteria(zone_ratio=MembershipFilter(mode="exclude", values=["4:1:0"]))
    run = _run(criteria)
    assert 1 not in run.retained_ids
    assert all(UNIVERSE.attributes_of(idx)["zone_ratio"] != "4:1:0" for idx in sorted(run.retained_ids)[:20])


def test_conflict_pair_excludes_every_combination_holding_both_numbers() -> None:
    criteria = ExclusionCriteria(conflict_pairs=ConflictFilter(pairs=[(2, 1)]))
    run = _run(criteria)
    conflict = run.outcomes[8]
    assert conflict.excluded_count == 120
    assert conflict.excluded_ids == tuple(range(1, 121))
    assert conflict.excluded_sample[1] == "contains conflict pair 01-02"
    assert run.final_count == 672


def test_cooccurrence_excludes_pairs_from_base_draw() -> None:
    criteria = ExclusionCriteria(cooccurrence=CoOccurrenceFilter(lookback=1))
    run = _run(criteria, base="25001", target="25002")
    # Survivors hold at most one number from 1..5: C(7,5) + 5 * C(7,4).
    assert run.final_count == 21 + 5 * 35


def test_cooccurrence_window_always_includes_base() -> None:
    candidate = _id_of(1, 2, 3, 6, 7)

    one_inclusive = _run(ExclusionCriteria(cooccurrence=CoOccurrenceFilter(lookback=1)))
    assert candidate in one_inclusive.retained_ids

    two_inclusive = _run(ExclusionCriteria(cooccurrence=CoOccurrenceFilter(lookback=2)))
    assert candidate not in two_inclusive.retained_ids

    one_exclusive = _run(ExclusionCriteria(cooccurrence=CoOccurrenceFilter(lookback=1, count_mode="exclusive")))
    assert candidate not in one_exclusive.retained_ids
    assert one_exclusive.outcomes[9].excluded_sample[1] == "shares 01-02 with period 25001"


def test_sampling_respects_stage_set_and_limit() -> None:
    criteria = ExclusionCriteria(
        sum_range=RangeFilter(ranges=[NumericRange(min=20, max=40)]),
        conflict_pairs=ConflictFilter(pairs=[(1, 2)]),
    )
    funnel = CandidateFunnel(UNIVERSE, sample_limit=5, record_excluded_ids=False)
    run = _run(criteria, funnel=funnel)
    sum_stage = run.outcomes[2]
    conflict = run.outcomes[8]
    assert sum_stage.excluded_count > 0
    assert sum_stage.excluded_sample == {}
    assert len(conflict.excluded_sample) == 5
    assert list(conflict.excluded_sample) == sorted(conflict.excluded_sample)
    assert conflict.excluded_ids == ()


def test_stage_counts_account_for_every_exclusion() -> None:
    criteria = ExclusionCriteria(
        zone_ratio=MembershipFilter(values=["2:2:1", "2:1:2", "1:2:2"]),
        sum_range=RangeFilter(ranges=[NumericRange(min=25, max=40)]),
        conflict_pairs=ConflictFilter(pairs=[(1, 12), (3, 7)]),
        cooccurrence=CoOccurrenceFilter(lookback=2, tuple_sizes=[3]),
    )
    run = _run(criteria, hot_ids=500)
    previous = run.initial_count
    for outcome in run.outcomes:
        assert outcome.input_count == previous
        assert outcome.excluded_count == outcome.input_count - outcome.retained_count
        previous = outcome.retained_count
    assert sum(run.stage_counts.values()) == run.initial_count - run.final_count


def test_stage_failure_names_the_stage() -> None:
    criteria = ExclusionCriteria(cooccurrence=CoOccurrenceFilter(lookback=2))
    with pytest.raises(StageExecutionError) as excinfo:
        _run(criteria, base="25004", target="25005")
    assert excinfo.value.stage_index == 10
    assert excinfo.value.stage_name == "cooccurrence"


def test_validate_selection_normalizes_and_rejects() -> None:
    assert validate_selection(["5:0:0", " 4:1:0 "], arity=5) == ("5:0:0", "4:1:0")
    with pytest.raises(ConfigurationError):
        validate_selection([], arity=5)
    with pytest.raises(ConfigurationError):
        validate_selection(["2:2:2"], arity=5)


def test_validate_criteria_checks_universe_shape() -> None:
    with pytest.raises(ConfigurationError):
        validate_criteria(ExclusionCriteria(zone_ratio=MembershipFilter(values=["5:0"])), UNIVERSE)
    with pytest.raises(ConfigurationError):
        validate_criteria(ExclusionCriteria(parity_ratio=MembershipFilter(values=["4:2"])), UNIVERSE)
    with pytest.raises(ConfigurationError):
        validate_criteria(ExclusionCriteria(conflict_pairs=ConflictFilter(pairs=[(1, 13)])), UNIVERSE)
    with pytest.raises(ConfigurationError):
        validate_criteria(
            ExclusionCriteria(cooccurrence=CoOccurrenceFilter(lookback=1, tuple_sizes=[6])), UNIVERSE
        )
    validate_criteria(ExclusionCriteria(parity_ratio=MembershipFilter(values=["3:2"])), UNIVERSE)


def test_criteria_models_reject_malformed_input() -> None:
    with pytest.raises(pydantic.ValidationError):
        NumericRange(min=30, max=20)
    with pytest.raises(pydantic.ValidationError):
        ConflictFilter(pairs=[(3, 3)])
    with pytest.raises(pydantic.ValidationError):
        CoOccurrenceFilter(lookback=0)
    with pytest.raises(pydantic.ValidationError):
        ExclusionCriteria(unknown_stage={"values": [1]})
    assert ConflictFilter(pairs=[(2, 1), (1, 2)]).pairs == [(1, 2)]


def test_filter_secondary_applies_sum_and_exclusions() -> None:
    secondary = CombinationUniverse(UniverseSpec(pool_size=5, arity=2))
    assert filter_secondary(secondary, None) == secondary.ids()
    criteria = SecondaryCriteria(sum_range=RangeFilter(ranges=[NumericRange(min=3, max=4)]), exclude_ids=[1])
    assert filter_secondary(secondary, criteria) == frozenset({2})


def test_stage_name_lookup() -> None:
    assert stage_name(1) == "classification_selection"
    assert stage_name(10) == "cooccurrence"
    with pytest.raises(KeyError):
        stage_name(11)
