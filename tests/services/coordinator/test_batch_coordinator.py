from __future__ import annotations

import json
import random
from pathlib import Path

import pydantic
import pytest

from combo_funnel.classification import ClassificationBuilder, ClassificationEntry, ClassificationStore, PairKey
from combo_funnel.coordinator import (
    BatchCoordinator,
    FunnelProfile,
    FunnelTask,
    PeriodResult,
    PeriodStatus,
    TaskState,
    UniverseConfig,
    load_profile,
    load_task,
)
from combo_funnel.coordinator.cli import main as cli_main
from combo_funnel.errors import ConfigurationError, InvalidTransitionError
from combo_funnel.exclusion_ledger import VERDICT_EXCLUDED, VERDICT_RETAINED
from combo_funnel.funnel import (
    CoOccurrenceFilter,
    ConflictFilter,
    ExclusionCriteria,
    NumericRange,
    RangeFilter,
    SecondaryCriteria,
)
from combo_funnel.periods import Period, PeriodStore
from combo_funnel.scoring import PREDICTED_UNSCORED, SCORED
from combo_funnel.universe import CombinationUniverse


ALL_CLASSES = [f"{hot}:{warm}:{5 - hot - warm}" for hot in range(6) for warm in range(6 - hot)]


class CountingClassificationStore(ClassificationStore):
    def __init__(self, *, locator: str) -> None:
        super().__init__(locator=locator)
        self.fetch_calls: list[int] = []

    def fetch_many(self, pairs):
        pairs = list(pairs)
        self.fetch_calls.append(len(pairs))
        return super().fetch_many(pairs)


def _label(seq: int) -> str:
    return str(25000 + seq)


def _draw(seq: int) -> Period:
    rng = random.Random(seq)
    return Period(
        sequence_id=seq,
        label=_label(seq),
        drawn_numbers=tuple(rng.sample(range(1, 13), 5)),
        drawn_bonus=tuple(rng.sample(range(1, 6), 2)),
    )


def _profile(tmp_path: Path, **overrides) -> FunnelProfile:
    payload = dict(
        store_locator=str(tmp_path / "funnel.sqlite"),
        runs_root=str(tmp_path / "runs"),
        batch_size=50,
        max_workers=2,
        universe=UniverseConfig(pool_size=12, arity=5, zones=[(1, 4), (5, 8), (9, 12)]),
        secondary_universe=UniverseConfig(pool_size=5, arity=2),
    )
    payload.update(overrides)
    return FunnelProfile(**payload)


def _seed(profile: FunnelProfile, drawn: int, *, predicted: bool = False, build: list[str] | None = None) -> None:
    periods = [_draw(seq) for seq in range(1, drawn + 1)]
    if predicted:
        periods.append(Period(sequence_id=drawn + 1, label=_label(drawn + 1)))
    store = PeriodStore(locator=profile.store_locator)
    store.upsert_periods(periods)
    targets = build if build is not None else [period.label for period in periods[1:]]
    builder = ClassificationBuilder(CombinationUniverse(profile.universe.as_spec()))
    builder.build_for_targets(store.load_ledger(), targets, ClassificationStore(locator=profile.store_locator))


def _criteria() -> ExclusionCriteria:
    return ExclusionCriteria(
        sum_range=RangeFilter(ranges=[NumericRange(min=18, max=48)]),
        conflict_pairs=ConflictFilter(pairs=[(1, 12), (5, 6)]),
        cooccurrence=CoOccurrenceFilter(lookback=1, tuple_sizes=[3]),
    )


def _task(task_id: str, targets: list[str], **overrides) -> FunnelTask:
    payload = dict(
        task_id=task_id,
        target_periods=targets,
        selection=[key for key in ALL_CLASSES if key != "5:0:0"],
        exclusion=_criteria(),
    )
    payload.update(overrides)
    return FunnelTask(**payload)


def _comparable(result: PeriodResult) -> tuple:
    return (
        result.status,
        result.base_label,
        result.primary_ids,
        result.secondary_ids,
        result.paired_count,
        dict(result.stage_counts),
        result.score.as_dict(),
    )


def test_full_task_resolves_predicted_period_and_preloads_once(tmp_path) -> None:
    profile = _profile(tmp_path)
    _seed(profile, 101, predicted=True)
    counting = CountingClassificationStore(locator=profile.store_locator)
    coordinator = BatchCoordinator(profile, classification_store=counting)
    targets = [_label(seq) for seq in range(2, 103)]

    outcome = coordinator.run(_task("scenario-b", targets))

    assert outcome.state == TaskState.COMPLETED
    assert counting.fetch_calls == [101]
    assert len(outcome.results) == 101
    predicted = outcome.results[_label(102)]
    assert predicted.status == PeriodStatus.OK
    assert predicted.is_predicted
    assert predicted.base_label == _label(101)
    assert predicted.batch_index == 3
    assert predicted.score.status == PREDICTED_UNSCORED
    drawn = outcome.results[_label(50)]
    assert drawn.base_label == _label(49)
    assert drawn.batch_index == 1
    assert drawn.score.status == SCORED
    for result in outcome.results.values():
        assert result.stages_executed == 10
        assert result.paired_count == len(result.primary_ids) * len(result.secondary_ids)
    assert outcome.metrics["chunks_completed"] == 3
    assert outcome.metrics["periods_completed"] == 101
    assert outcome.metrics["ledger_rows_new"] == 101 * 10
    assert outcome.health["health_state"] == "GREEN"


def test_missing_entry_differs_from_filtered_to_zero(tmp_path) -> None:
    profile = _profile(tmp_path)
    _seed(profile, 3, build=[_label(2)])
    coordinator = BatchCoordinator(profile)
    task = _task(
        "scenario-c",
        [_label(2), _label(3)],
        exclusion=ExclusionCriteria(sum_range=RangeFilter(ranges=[NumericRange(min=100, max=120)])),
    )

    outcome = coordinator.run(task)

    assert outcome.state == TaskState.COMPLETED
    emptied = outcome.results[_label(2)]
    assert emptied.status == PeriodStatus.OK
    assert emptied.primary_ids == ()
    assert emptied.paired_count == 0
    assert emptied.stages_executed == 10
    missing = outcome.results[_label(3)]
    assert missing.status == PeriodStatus.NO_CLASSIFICATION_DATA
    assert missing.stages_executed == 0
    assert missing.error["pair"] == f"{_label(2)}-{_label(3)}"
    assert outcome.metrics["no_classification_total"] == 1
    assert outcome.health["health_state"] == "AMBER"


def test_first_period_and_invalid_entry_fail_only_their_period(tmp_path) -> None:
    profile = _profile(tmp_path)
    _seed(profile, 4, build=[_label(2), _label(3)])
    ClassificationStore(locator=profile.store_locator).put(
        ClassificationEntry.from_payload(
            pair=PairKey(_label(3), _label(4)), arity=5, classes={"5:0:0": [1, 2, 3]}
        )
    )
    coordinator = BatchCoordinator(profile)

    outcome = coordinator.run(_task("partial", [_label(seq) for seq in range(1, 5)]))

    assert outcome.state == TaskState.COMPLETED
    statuses = {label: result.status for label, result in outcome.results.items()}
    assert statuses == {
        _label(1): PeriodStatus.MISSING_BASE_PERIOD,
        _label(2): PeriodStatus.OK,
        _label(3): PeriodStatus.OK,
        _label(4): PeriodStatus.CLASSIFICATION_INVALID,
    }
    assert outcome.metrics["missing_base_total"] == 1
    assert outcome.metrics["classification_invalid_total"] == 1


def test_results_do_not_depend_on_chunking_or_task_id(tmp_path) -> None:
    _seed(_profile(tmp_path), 12, predicted=True)
    targets = [_label(seq) for seq in range(2, 14)]

    one = BatchCoordinator(_profile(tmp_path, batch_size=1, max_workers=1)).run(_task("chunk-1", targets))
    five = BatchCoordinator(_profile(tmp_path, batch_size=5, max_workers=3)).run(_task("chunk-5", targets))
    whole = BatchCoordinator(_profile(tmp_path, batch_size=50)).run(_task("chunk-50", targets))

    for label in targets:
        expected = _comparable(whole.results[label])
        assert _comparable(one.results[label]) == expected
        assert _comparable(five.results[label]) == expected
    assert one.results[_label(13)].batch_index == 12
    assert five.results[_label(13)].batch_index == 3

    single = BatchCoordinator(_profile(tmp_path)).run(_task("single-7", [_label(7)]))
    assert _comparable(single.results[_label(7)]) == _comparable(whole.results[_label(7)])


def test_gapped_targets_pair_with_sequence_predecessors(tmp_path) -> None:
    profile = _profile(tmp_path, batch_size=1, max_workers=1)
    _seed(profile, 10)
    targets = [_label(2), _label(5), _label(9)]

    outcome = BatchCoordinator(profile).run(_task("gapped", targets))

    assert outcome.state == TaskState.COMPLETED
    assert {label: result.base_label for label, result in outcome.results.items()} == {
        _label(2): _label(1),
        _label(5): _label(4),
        _label(9): _label(8),
    }
    assert [outcome.results[label].batch_index for label in targets] == [1, 2, 3]
    assert all(result.status == PeriodStatus.OK for result in outcome.results.values())


def test_one_to_one_with_emptied_secondary_pool_is_a_period_error(tmp_path) -> None:
    profile = _profile(tmp_path)
    _seed(profile, 3)
    task = _task(
        "one-to-one-empty",
        [_label(2), _label(3)],
        exclusion=ExclusionCriteria(),
        secondary=SecondaryCriteria(exclude_ids=list(range(1, 11))),
        pairing_policy="one_to_one_bounded",
    )

    outcome = BatchCoordinator(profile).run(task)

    assert outcome.state == TaskState.COMPLETED
    for label in (_label(2), _label(3)):
        result = outcome.results[label]
        assert result.status == PeriodStatus.PERIOD_ERROR
        assert result.paired_count == 0
        assert result.error["kind"] == "PairingIntegrityError"
        assert "one side is empty" in result.error["message"]
    assert outcome.metrics["integrity_errors_total"] == 2
    assert outcome.health["health_state"] == "RED"


def test_cancel_then_resume_skips_completed_periods(tmp_path) -> None:
    profile = _profile(tmp_path, batch_size=2)
    _seed(profile, 7)
    coordinator = BatchCoordinator(profile)
    task = _task("resumable", [_label(seq) for seq in range(2, 8)])

    def _cancel_after_first(batch_index: int) -> None:
        if batch_index == 1:
            coordinator.cancel()

    cancelled = coordinator.run(task, after_chunk=_cancel_after_first)
    assert cancelled.state == TaskState.CANCELLED
    assert sorted(cancelled.results) == [_label(2), _label(3)]
    assert cancelled.health["health_state"] == "AMBER"
    assert coordinator.task_store.state("resumable") == TaskState.CANCELLED

    resumed = coordinator.run(task)
    assert resumed.state == TaskState.COMPLETED
    assert len(resumed.results) == 6
    assert resumed.metrics["periods_resumed_skip"] == 2
    assert resumed.metrics["ledger_duplicate_total"] == 0

    again = coordinator.run(task)
    assert again.state == TaskState.COMPLETED
    assert again.metrics["periods_completed"] == 0


def test_unexpected_error_fails_task_and_allows_resume(tmp_path) -> None:
    profile = _profile(tmp_path, batch_size=2)
    _seed(profile, 5)
    coordinator = BatchCoordinator(profile)
    task = _task("crashy", [_label(seq) for seq in range(2, 6)])

    def _boom(batch_index: int) -> None:
        raise RuntimeError("disk full")

    with pytest.raises(RuntimeError):
        coordinator.run(task, after_chunk=_boom)
    assert coordinator.task_store.state("crashy") == TaskState.FAILED

    resumed = coordinator.run(task)
    assert resumed.state == TaskState.COMPLETED
    assert resumed.metrics["periods_resumed_skip"] == 2


@pytest.mark.parametrize(
    "overrides",
    [
        {"selection": ["2:2:2"]},
        {"target_periods": ["25002", "99998", "99999"]},
        {"exclusion": ExclusionCriteria(conflict_pairs=ConflictFilter(pairs=[(1, 40)]))},
    ],
)
def test_configuration_errors_fail_before_any_period(tmp_path, overrides) -> None:
    profile = _profile(tmp_path)
    _seed(profile, 3)
    coordinator = BatchCoordinator(profile)
    task = _task("bad-config", [_label(2), _label(3)], **overrides)

    outcome = coordinator.run(task)

    assert outcome.state == TaskState.FAILED
    assert outcome.results == {}
    assert outcome.health["health_state"] == "RED"
    assert coordinator.task_store.status("bad-config")["reason"]


def test_undrawn_target_must_be_single_and_last(tmp_path) -> None:
    profile = _profile(tmp_path)
    _seed(profile, 3, predicted=True)
    coordinator = BatchCoordinator(profile)
    outcome = coordinator.run(_task("predicted-first", [_label(4), _label(3)]))
    assert outcome.state == TaskState.FAILED
    assert "must be the last target" in (outcome.reason or "")


def test_empty_ledger_fails_the_task(tmp_path) -> None:
    coordinator = BatchCoordinator(_profile(tmp_path))
    outcome = coordinator.run(_task("no-ledger", [_label(2)]))
    assert outcome.state == TaskState.FAILED


def test_task_model_rejects_malformed_input() -> None:
    with pytest.raises(pydantic.ValidationError):
        FunnelTask(task_id="t", target_periods=[], selection=["1:2:2"])
    with pytest.raises(pydantic.ValidationError):
        FunnelTask(task_id="t", target_periods=["1", "1"], selection=["1:2:2"])
    with pytest.raises(pydantic.ValidationError):
        FunnelTask(
            task_id="t",
            target_periods=["1"],
            selection=["1:2:2"],
            exclusion={"sum_range": {"ranges": [{"min": 40, "max": 20}]}},
        )
    task = FunnelTask(task_id=" t ", target_periods=[25001], selection=["1:2:2"], pairing_policy="ONE_TO_ONE_BOUNDED")
    assert task.task_id == "t"
    assert task.target_periods == ["25001"]
    assert task.pairing_policy.value == "one_to_one_bounded"


def test_resubmitting_a_different_definition_is_rejected(tmp_path) -> None:
    profile = _profile(tmp_path)
    _seed(profile, 3)
    coordinator = BatchCoordinator(profile)
    coordinator.run(_task("stable", [_label(2)]))
    with pytest.raises(ConfigurationError):
        coordinator.run(_task("stable", [_label(2), _label(3)]))


def test_rescore_after_predicted_period_is_drawn(tmp_path) -> None:
    profile = _profile(tmp_path)
    _seed(profile, 5, predicted=True)
    coordinator = BatchCoordinator(profile)
    coordinator.run(_task("rescore", [_label(5), _label(6)]))

    untouched = coordinator.rescore_period("rescore", _label(6))
    assert untouched.score.status == PREDICTED_UNSCORED
    assert untouched.rescored_at_utc is None

    coordinator.period_store.upsert_periods([_draw(6)])
    rescored = coordinator.rescore_period("rescore", _label(6))
    assert rescored.score.status == SCORED
    assert rescored.rescored_at_utc
    assert rescored.primary_ids == untouched.primary_ids
    assert coordinator.task_store.result("rescore", _label(6)).score == rescored.score
    assert coordinator.rescore_period("rescore", _label(6)) == rescored

    with pytest.raises(ConfigurationError):
        coordinator.rescore_period("rescore", _label(2))


def test_explain_and_summary_read_back_the_ledger(tmp_path) -> None:
    profile = _profile(tmp_path)
    _seed(profile, 4)
    coordinator = BatchCoordinator(profile)
    outcome = coordinator.run(_task("explained", [_label(3), _label(4)]))
    result = outcome.results[_label(3)]

    excluded_id = next(idx for idx in range(1, 793) if idx not in result.primary_ids)
    verdict = coordinator.explain("explained", _label(3), excluded_id)
    assert verdict.status == VERDICT_EXCLUDED
    assert verdict.stage_index is not None
    if result.primary_ids:
        kept = coordinator.explain("explained", _label(3), result.primary_ids[0])
        assert kept.status == VERDICT_RETAINED

    summary = coordinator.summary("explained")
    assert summary["task"]["state"] == "COMPLETED"
    assert [period["period_label"] for period in summary["periods"]] == [_label(3), _label(4)]
    assert "primary_ids" not in summary["periods"][0]
    assert [row["stage_index"] for row in summary["stage_totals"]] == list(range(1, 11))
    assert summary["ledger_mismatches"] == []
    with pytest.raises(ConfigurationError):
        coordinator.summary("unknown-task")


def test_metrics_and_health_are_written_under_runs_root(tmp_path) -> None:
    profile = _profile(tmp_path)
    _seed(profile, 3)
    BatchCoordinator(profile).run(_task("observed", [_label(2), _label(3)]))

    metrics = json.loads((tmp_path / "runs" / "observed" / "metrics" / "last_metrics.json").read_text())
    health = json.loads((tmp_path / "runs" / "observed" / "health" / "last_health.json").read_text())
    assert metrics["metrics"]["periods_completed"] == 2
    assert health["task_state"] == "COMPLETED"
    assert health["health_state"] == "GREEN"


def test_task_store_enforces_transitions(tmp_path) -> None:
    profile = _profile(tmp_path)
    _seed(profile, 3)
    coordinator = BatchCoordinator(profile)
    coordinator.run(_task("finished", [_label(2)]))
    with pytest.raises(InvalidTransitionError):
        coordinator.task_store.transition("finished", TaskState.CHUNK_RUNNING)
    with pytest.raises(InvalidTransitionError):
        coordinator.task_store.transition("never-registered", TaskState.KEYS_RESOLVED)


def test_load_profile_and_task_expand_environment(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("FUNNEL_STORE", str(tmp_path / "env.sqlite"))
    monkeypatch.delenv("FUNNEL_BATCH", raising=False)
    profile_path = tmp_path / "profile.yaml"
    profile_path.write_text(
        "store_locator: ${FUNNEL_STORE}\n"
        "batch_size: ${FUNNEL_BATCH:-7}\n"
        "universe:\n"
        "  pool_size: 12\n"
        "  arity: 5\n",
        encoding="utf-8",
    )
    profile = load_profile(profile_path)
    assert profile.store_locator == str(tmp_path / "env.sqlite")
    assert profile.batch_size == 7

    task_path = tmp_path / "task.json"
    task_path.write_text(
        json.dumps({"task_id": "from-file", "target_periods": [25002], "selection": ["1:2:2"]}),
        encoding="utf-8",
    )
    assert load_task(task_path).target_periods == ["25002"]

    broken = tmp_path / "broken.yaml"
    broken.write_text("store_locator: ${FUNNEL_UNSET_VARIABLE}\n", encoding="utf-8")
    monkeypatch.delenv("FUNNEL_UNSET_VARIABLE", raising=False)
    with pytest.raises(ValueError):
        load_profile(broken)


def test_cli_imports_builds_runs_and_summarizes(tmp_path, capsys) -> None:
    profile_path = tmp_path / "profile.yaml"
    profile_path.write_text(
        f"store_locator: {tmp_path / 'cli.sqlite'}\n"
        f"runs_root: {tmp_path / 'runs'}\n"
        "universe:\n"
        "  pool_size: 12\n"
        "  arity: 5\n"
        "  zones: [[1, 4], [5, 8], [9, 12]]\n"
        "secondary_universe:\n"
        "  pool_size: 5\n"
        "  arity: 2\n",
        encoding="utf-8",
    )
    csv_path = tmp_path / "periods.csv"
    csv_path.write_text(
        "sequence_id,label,numbers,bonus\n"
        "1,25001,1 2 3 4 5,1 2\n"
        "2,25002,6 7 8 9 10,3 4\n"
        "3,25003,2 4 6 8 11,2 5\n",
        encoding="utf-8",
    )
    task_path = tmp_path / "task.json"
    task_path.write_text(
        json.dumps({"task_id": "cli-task", "target_periods": ["25002", "25003"], "selection": ALL_CLASSES}),
        encoding="utf-8",
    )
    base = ["--profile", str(profile_path)]

    cli_main(["import-periods", *base, "--csv", str(csv_path)])
    assert json.loads(capsys.readouterr().out) == {"imported": 3}

    cli_main(["build-classification", *base, "--target", "25002", "--target", "25003"])
    assert json.loads(capsys.readouterr().out)["generated"] == 2

    cli_main(["run", *base, "--task", str(task_path)])
    run_payload = json.loads(capsys.readouterr().out)
    assert run_payload["state"] == "COMPLETED"
    assert run_payload["metrics"]["periods_completed"] == 2

    cli_main(["summary", *base, "--task-id", "cli-task"])
    summary = json.loads(capsys.readouterr().out)
    assert [period["primary_count"] for period in summary["periods"]] == [792, 792]
