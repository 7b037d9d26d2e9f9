"""Batch coordinator: validates a task, resolves every key, preloads once, then runs chunks."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
import logging
import threading
from typing import Any, Callable, Optional

from combo_funnel.classification import ClassificationCache, ClassificationStore, ClassificationView, KeyResolution
from combo_funnel.errors import (
    ConfigurationError,
    LedgerUnavailableError,
    PairingIntegrityError,
)
from combo_funnel.exclusion_ledger import (
    LEDGER_OBS_DUPLICATE,
    LEDGER_OBS_NEW,
    LEDGER_OBS_PAYLOAD_MISMATCH,
    ExclusionLedgerEntry,
    ExclusionLedgerStore,
    ExclusionVerdict,
    explain_exclusion,
    split_stage_entries,
    stage_summary,
)
from combo_funnel.funnel import (
    CandidateFunnel,
    FunnelInvariantError,
    StageExecutionError,
    filter_secondary,
    validate_criteria,
    validate_selection,
)
from combo_funnel.periods import Period, PeriodLedger, PeriodStore
from combo_funnel.scoring import OutcomeScorer, pair
from combo_funnel.storage import chunked, utc_now
from combo_funnel.universe import CombinationUniverse

from .config import FunnelProfile
from .models import FunnelTask, PeriodResult, PeriodStatus, TaskState
from .observability import TaskRunMetrics, build_health_payload, export_health
from .results import TaskStore


logger = logging.getLogger("combo_funnel.coordinator")


@dataclass(frozen=True)
class TaskPlan:
    """Task-wide state fixed before the first chunk; shared read-only by every worker."""

    ledger: PeriodLedger
    latest_drawn: Period
    predicted_label: Optional[str]
    selection: tuple[str, ...]
    keys: KeyResolution
    view: ClassificationView
    secondary_ids: frozenset[int]


@dataclass(frozen=True)
class PeriodWork:
    result: PeriodResult
    entries: tuple[ExclusionLedgerEntry, ...] = ()


@dataclass(frozen=True)
class TaskOutcome:
    task_id: str
    state: TaskState
    reason: Optional[str] = None
    results: dict[str, PeriodResult] = field(default_factory=dict)
    metrics: dict[str, int] = field(default_factory=dict)
    health: dict[str, Any] = field(default_factory=dict)


class BatchCoordinator:
    def __init__(
        self,
        profile: FunnelProfile,
        *,
        period_store: Optional[PeriodStore] = None,
        classification_store: Optional[ClassificationStore] = None,
        task_store: Optional[TaskStore] = None,
        ledger_store: Optional[ExclusionLedgerStore] = None,
        primary: Optional[CombinationUniverse] = None,
        secondary: Optional[CombinationUniverse] = None,
    ) -> None:
        self.profile = profile
        locator = profile.store_locator
        self.period_store = period_store or PeriodStore(locator=locator)
        self.classification_store = classification_store or ClassificationStore(locator=locator)
        self.task_store = task_store or TaskStore(locator=locator)
        self.ledger_store = ledger_store or ExclusionLedgerStore(locator=locator)
        self.primary = primary or CombinationUniverse(profile.universe.as_spec())
        self.secondary = secondary or CombinationUniverse(profile.secondary_universe.as_spec())
        self.cache = ClassificationCache(self.classification_store, self.primary)
        self.funnel = CandidateFunnel(
            self.primary,
            sample_stages=profile.sample_stages,
            sample_limit=profile.sample_limit,
            record_excluded_ids=profile.record_excluded_ids,
        )
        self.scorer = OutcomeScorer(self.primary, self.secondary, profile.prize_table)
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Request cancellation; honoured before the next chunk starts."""
        self._cancel.set()

    def run(self, task: FunnelTask, *, after_chunk: Optional[Callable[[int], None]] = None) -> TaskOutcome:
        task_id = task.task_id
        metrics = TaskRunMetrics(task_id)
        state = self.task_store.register(task)
        if state == TaskState.COMPLETED:
            logger.info("Task already completed task=%s", task_id)
            return self._finish(task, metrics, TaskState.COMPLETED)
        if state not in (TaskState.CREATED, TaskState.FAILED, TaskState.CANCELLED):
            self.task_store.transition(task_id, TaskState.FAILED, reason=f"interrupted in {state.value}")
        self._cancel.clear()

        try:
            plan = self._prepare(task)
        except (ConfigurationError, LedgerUnavailableError) as exc:
            logger.error("Task failed before any period ran task=%s reason=%s", task_id, exc)
            self.task_store.transition(task_id, TaskState.FAILED, reason=str(exc))
            return self._finish(task, metrics, TaskState.FAILED, reason=str(exc))

        done = self.task_store.completed_labels(task_id)
        metrics.bump("periods_total", len(task.target_periods))
        try:
            with ThreadPoolExecutor(max_workers=self.profile.max_workers) as executor:
                for batch_index, chunk in enumerate(chunked(task.target_periods, self.profile.batch_size), start=1):
                    if self._cancel.is_set():
                        reason = f"cancelled before chunk {batch_index}"
                        self.task_store.transition(task_id, TaskState.CANCELLED, reason=reason)
                        logger.warning("Task cancelled task=%s %s", task_id, reason)
                        return self._finish(task, metrics, TaskState.CANCELLED, reason=reason)
                    pending = [label for label in chunk if label not in done]
                    metrics.bump("periods_resumed_skip", len(chunk) - len(pending))
                    if not pending:
                        continue
                    self.task_store.transition(task_id, TaskState.CHUNK_RUNNING, reason=f"chunk {batch_index}")
                    futures = {
                        label: executor.submit(self._process_period, task, label, batch_index, plan)
                        for label in pending
                    }
                    for label in pending:
                        self._write(futures[label].result(), metrics)
                    metrics.bump("chunks_completed")
                    metrics.export(root=self.profile.runs_root)
                    logger.info(
                        "Chunk complete task=%s chunk=%s periods=%s", task_id, batch_index, len(pending)
                    )
                    if after_chunk is not None:
                        after_chunk(batch_index)
        except Exception as exc:
            logger.exception("Task aborted task=%s", task_id)
            self.task_store.transition(task_id, TaskState.FAILED, reason=f"{type(exc).__name__}: {exc}")
            self._finish(task, metrics, TaskState.FAILED, reason=str(exc))
            raise

        self.task_store.transition(task_id, TaskState.COMPLETED)
        return self._finish(task, metrics, TaskState.COMPLETED)

    def _prepare(self, task: FunnelTask) -> TaskPlan:
        selection = validate_selection(task.selection, arity=self.primary.arity)
        validate_criteria(task.exclusion, self.primary)
        ledger = self.period_store.load_ledger()
        latest = ledger.latest_drawn()
        predicted_label = _predicted_label(task.target_periods, ledger)
        keys = self.cache.build_keys(
            task.target_periods,
            ledger,
            predicted_label=predicted_label,
            latest_drawn=latest,
        )
        self.task_store.transition(task.task_id, TaskState.KEYS_RESOLVED)
        view = self.cache.preload(keys.key_set())
        self.task_store.transition(task.task_id, TaskState.CACHE_PRELOADED)
        return TaskPlan(
            ledger=ledger,
            latest_drawn=latest,
            predicted_label=predicted_label,
            selection=selection,
            keys=keys,
            view=view,
            secondary_ids=filter_secondary(self.secondary, task.secondary),
        )

    def _process_period(self, task: FunnelTask, label: str, batch_index: int, plan: TaskPlan) -> PeriodWork:
        """Compute one period. Runs on a worker thread and never touches a store."""
        is_predicted = label == plan.predicted_label
        base = dict(
            task_id=task.task_id,
            period_label=label,
            batch_index=batch_index,
            is_predicted=is_predicted,
            pairing_policy=task.pairing_policy,
        )
        tag = {"period_label": label}
        key = plan.keys.pair_for(label)
        if key is None:
            message = plan.keys.unresolved.get(label, f"no base period for {label}")
            logger.warning("Period skipped period=%s status=MISSING_BASE_PERIOD", label, extra=tag)
            return PeriodWork(
                PeriodResult(
                    status=PeriodStatus.MISSING_BASE_PERIOD,
                    error=_error(label, None, None, message),
                    **base,
                )
            )
        invalid = plan.view.invalid_reason(key)
        if invalid is not None:
            logger.warning(
                "Period skipped period=%s pair=%s status=CLASSIFICATION_INVALID", label, key.wire_key, extra=tag
            )
            return PeriodWork(
                PeriodResult(
                    status=PeriodStatus.CLASSIFICATION_INVALID,
                    base_label=key.base_label,
                    error=_error(label, key.wire_key, None, invalid),
                    **base,
                )
            )
        entry = plan.view.lookup(key.base_label, key.target_label)
        if entry is None:
            logger.warning(
                "Period skipped period=%s pair=%s status=NO_CLASSIFICATION_DATA", label, key.wire_key, extra=tag
            )
            return PeriodWork(
                PeriodResult(
                    status=PeriodStatus.NO_CLASSIFICATION_DATA,
                    base_label=key.base_label,
                    error=_error(label, key.wire_key, None, f"no classification entry for pair {key.wire_key}"),
                    **base,
                )
            )
        try:
            run = self.funnel.run(
                entry=entry,
                selection=plan.selection,
                criteria=task.exclusion,
                ledger=plan.ledger,
                base_label=key.base_label,
            )
            paired = pair(run.retained_ids, plan.secondary_ids, task.pairing_policy)
            paired.check_materialisable(context=f"{task.task_id}/{label}")
            outcome = None if is_predicted else plan.ledger.get(label)
            result = PeriodResult(
                status=PeriodStatus.OK,
                base_label=key.base_label,
                primary_ids=paired.primary_ids,
                secondary_ids=paired.secondary_ids,
                paired_count=paired.count,
                stage_counts=run.stage_counts,
                stages_executed=len(run.outcomes),
                score=self.scorer.score(paired, outcome),
                ledger_ref=f"{task.task_id}/{label}",
                **base,
            )
            result.verify_paired_count()
        except StageExecutionError as exc:
            logger.warning("Period failed period=%s pair=%s %s", label, key.wire_key, exc, extra=tag)
            return PeriodWork(
                PeriodResult(
                    status=PeriodStatus.PERIOD_ERROR,
                    base_label=key.base_label,
                    error=_error(label, key.wire_key, exc.stage_name, str(exc)),
                    **base,
                )
            )
        except (PairingIntegrityError, FunnelInvariantError) as exc:
            logger.error("Integrity error period=%s pair=%s %s", label, key.wire_key, exc, extra=tag)
            return PeriodWork(
                PeriodResult(
                    status=PeriodStatus.PERIOD_ERROR,
                    base_label=key.base_label,
                    error=_error(label, key.wire_key, None, str(exc), kind=type(exc).__name__),
                    **base,
                )
            )
        entries: list[ExclusionLedgerEntry] = []
        for stage in run.outcomes:
            entries.extend(
                split_stage_entries(
                    task_id=task.task_id,
                    period_label=label,
                    stage_index=stage.stage_index,
                    stage_name=stage.stage_name,
                    excluded_count=stage.excluded_count,
                    excluded_ids=stage.excluded_ids,
                    sample=stage.excluded_sample,
                    ids_recorded=self.profile.record_excluded_ids,
                    batch_index=batch_index,
                    max_ids_per_row=self.profile.max_ids_per_row,
                )
            )
        return PeriodWork(result=result, entries=tuple(entries))

    def _write(self, work: PeriodWork, metrics: TaskRunMetrics) -> None:
        result = work.result
        if work.entries:
            for observation in self.ledger_store.append(work.entries):
                if observation.outcome == LEDGER_OBS_NEW:
                    metrics.bump("ledger_rows_new")
                elif observation.outcome == LEDGER_OBS_DUPLICATE:
                    metrics.bump("ledger_duplicate_total")
                elif observation.outcome == LEDGER_OBS_PAYLOAD_MISMATCH:
                    metrics.bump("ledger_payload_mismatch_total")
                    logger.error(
                        "Exclusion ledger mismatch task=%s period=%s stage=%s chunk=%s",
                        result.task_id,
                        result.period_label,
                        observation.stage_index,
                        observation.chunk_index,
                    )
        self.task_store.upsert_result(result)
        if result.ok:
            metrics.bump("periods_completed")
            return
        metrics.bump("period_errors_total")
        if result.status == PeriodStatus.MISSING_BASE_PERIOD:
            metrics.bump("missing_base_total")
        elif result.status == PeriodStatus.NO_CLASSIFICATION_DATA:
            metrics.bump("no_classification_total")
        elif result.status == PeriodStatus.CLASSIFICATION_INVALID:
            metrics.bump("classification_invalid_total")
        elif result.error and result.error.get("kind") in ("PairingIntegrityError", "FunnelInvariantError"):
            metrics.bump("integrity_errors_total")

    def _finish(
        self,
        task: FunnelTask,
        metrics: TaskRunMetrics,
        state: TaskState,
        *,
        reason: Optional[str] = None,
    ) -> TaskOutcome:
        snapshot = metrics.export(root=self.profile.runs_root)
        health = build_health_payload(task_id=task.task_id, state=state.value, counters=snapshot["metrics"])
        export_health(task_id=task.task_id, payload=health, root=self.profile.runs_root)
        return TaskOutcome(
            task_id=task.task_id,
            state=state,
            reason=reason,
            results=self.task_store.results(task.task_id),
            metrics=dict(snapshot["metrics"]),
            health=health,
        )

    def rescore_period(self, task_id: str, period_label: Any) -> PeriodResult:
        """Score a predicted period's stored result once its outcome has been drawn."""
        result = self.task_store.result(task_id, period_label)
        if result is None:
            raise ConfigurationError(f"no result for task {task_id} period {period_label}")
        if not result.ok:
            raise ConfigurationError(f"period {result.period_label} has status {result.status.value}; nothing to score")
        if result.score.is_scored:
            return result
        ledger = self.period_store.load_ledger()
        period = ledger.get(result.period_label)
        if period is None or not period.is_drawn:
            logger.info("Rescore skipped; period not drawn yet task=%s period=%s", task_id, result.period_label)
            return result
        result.verify_paired_count()
        paired = pair(result.primary_ids, result.secondary_ids, result.pairing_policy)
        updated = replace(result, score=self.scorer.score(paired, period), rescored_at_utc=utc_now())
        self.task_store.upsert_result(updated)
        logger.info(
            "Period rescored task=%s period=%s total_prize=%s", task_id, period.label, updated.score.total_prize
        )
        return updated

    def explain(self, task_id: str, period_label: Any, combination_id: int) -> ExclusionVerdict:
        result = self.task_store.result(task_id, period_label)
        retained = result.primary_ids if result is not None and result.ok else None
        return explain_exclusion(
            self.ledger_store,
            task_id=task_id,
            period_label=period_label,
            combination_id=combination_id,
            retained_ids=retained,
        )

    def summary(self, task_id: str) -> dict[str, Any]:
        status = self.task_store.status(task_id)
        if status is None:
            raise ConfigurationError(f"unknown task: {task_id}")
        results = self.task_store.results(task_id)
        return {
            "task": status,
            "periods": [results[label].summary() for label in sorted(results, key=_label_sort_key)],
            "stage_totals": stage_summary(self.ledger_store, task_id=task_id),
            "ledger_mismatches": self.ledger_store.mismatches(task_id),
        }


def _predicted_label(targets: list[str], ledger: PeriodLedger) -> Optional[str]:
    """The single undrawn target, which must be the last one; drawn-only tasks have none."""
    undrawn = [label for label in targets if not ledger.is_drawn(label)]
    if not undrawn:
        return None
    if len(undrawn) > 1:
        raise ConfigurationError(f"task may contain at most one undrawn target period; got {undrawn}")
    if targets[-1] != undrawn[0]:
        raise ConfigurationError(f"undrawn target period {undrawn[0]} must be the last target")
    return undrawn[0]


def _error(
    period_label: str,
    pair_key: Optional[str],
    stage: Optional[str],
    message: str,
    *,
    kind: Optional[str] = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"period": period_label, "pair": pair_key, "stage": stage, "message": message}
    if kind:
        payload["kind"] = kind
    return payload


def _label_sort_key(label: str) -> tuple[int, Any]:
    return (0, int(label)) if label.isdigit() else (1, label)
