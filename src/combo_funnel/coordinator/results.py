"""Task status and per-period result persistence."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from combo_funnel.errors import ConfigurationError, InvalidTransitionError
from combo_funnel.periods import normalize_label
from combo_funnel.storage import SqlStore, utc_now

from .models import FunnelTask, PeriodResult, TaskState


logger = logging.getLogger("combo_funnel.coordinator.results")


_ALLOWED_TRANSITIONS: dict[TaskState, set[TaskState]] = {
    TaskState.CREATED: {TaskState.KEYS_RESOLVED, TaskState.FAILED, TaskState.CANCELLED},
    TaskState.KEYS_RESOLVED: {TaskState.CACHE_PRELOADED, TaskState.FAILED, TaskState.CANCELLED},
    TaskState.CACHE_PRELOADED: {TaskState.CHUNK_RUNNING, TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED},
    TaskState.CHUNK_RUNNING: {TaskState.CHUNK_RUNNING, TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED},
    TaskState.COMPLETED: {TaskState.COMPLETED},
    TaskState.FAILED: {TaskState.KEYS_RESOLVED, TaskState.FAILED},
    TaskState.CANCELLED: {TaskState.KEYS_RESOLVED, TaskState.FAILED, TaskState.CANCELLED},
}


def allowed_transition(current: TaskState, next_state: TaskState) -> bool:
    return next_state in _ALLOWED_TRANSITIONS.get(current, set())


class TaskStore(SqlStore):
    """Task status rows plus one upserted result row per (task, period)."""

    def register(self, task: FunnelTask) -> TaskState:
        """Create the task, or return the stored state when the same task is submitted again."""
        task_json = task.model_dump_json()
        with self._connect() as conn:
            row = conn.execute(
                *self._sql_with_params(
                    "SELECT state, task_json FROM funnel_tasks WHERE task_id = {p1}",
                    (task.task_id,),
                )
            ).fetchone()
            if row is not None:
                if FunnelTask.model_validate_json(str(row[1])) != task:
                    raise ConfigurationError(f"task {task.task_id} already exists with a different definition")
                return TaskState(str(row[0]))
            now = utc_now()
            conn.execute(
                *self._sql_with_params(
                    """
                    INSERT INTO funnel_tasks (task_id, state, task_json, reason, created_at_utc, updated_at_utc)
                    VALUES ({p1}, {p2}, {p3}, NULL, {p4}, {p4})
                    """,
                    (task.task_id, TaskState.CREATED.value, task_json, now),
                )
            )
        return TaskState.CREATED

    def load_task(self, task_id: str) -> FunnelTask:
        with self._connect() as conn:
            row = conn.execute(
                *self._sql_with_params("SELECT task_json FROM funnel_tasks WHERE task_id = {p1}", (str(task_id),))
            ).fetchone()
        if row is None:
            raise ConfigurationError(f"unknown task: {task_id}")
        return FunnelTask.model_validate_json(str(row[0]))

    def state(self, task_id: str) -> Optional[TaskState]:
        with self._connect() as conn:
            row = conn.execute(
                *self._sql_with_params("SELECT state FROM funnel_tasks WHERE task_id = {p1}", (str(task_id),))
            ).fetchone()
        return TaskState(str(row[0])) if row else None

    def status(self, task_id: str) -> Optional[dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                *self._sql_with_params(
                    """
                    SELECT task_id, state, reason, created_at_utc, updated_at_utc
                    FROM funnel_tasks WHERE task_id = {p1}
                    """,
                    (str(task_id),),
                )
            ).fetchone()
        if row is None:
            return None
        return {
            "task_id": str(row[0]),
            "state": str(row[1]),
            "reason": row[2],
            "created_at_utc": str(row[3]),
            "updated_at_utc": str(row[4]),
        }

    def transition(self, task_id: str, next_state: TaskState, *, reason: Optional[str] = None) -> None:
        current = self.state(task_id)
        if current is None:
            raise InvalidTransitionError(f"unknown task: {task_id}")
        if not allowed_transition(current, next_state):
            raise InvalidTransitionError(f"Invalid transition {current.value} -> {next_state.value}")
        with self._connect() as conn:
            conn.execute(
                *self._sql_with_params(
                    """
                    UPDATE funnel_tasks
                       SET state = {p2}, reason = {p3}, updated_at_utc = {p4}
                     WHERE task_id = {p1}
                    """,
                    (str(task_id), next_state.value, reason, utc_now()),
                )
            )
        logger.info("Task state task=%s %s -> %s", task_id, current.value, next_state.value)

    def upsert_result(self, result: PeriodResult) -> None:
        with self._connect() as conn:
            conn.execute(
                *self._sql_with_params(
                    """
                    INSERT INTO funnel_period_results (task_id, period_label, status, result_json, updated_at_utc)
                    VALUES ({p1}, {p2}, {p3}, {p4}, {p5})
                    ON CONFLICT(task_id, period_label) DO UPDATE SET
                        status = excluded.status,
                        result_json = excluded.result_json,
                        updated_at_utc = excluded.updated_at_utc
                    """,
                    (
                        result.task_id,
                        result.period_label,
                        result.status.value,
                        json.dumps(result.as_dict(), sort_keys=True, separators=(",", ":")),
                        utc_now(),
                    ),
                )
            )

    def result(self, task_id: str, period_label: Any) -> Optional[PeriodResult]:
        with self._connect() as conn:
            row = conn.execute(
                *self._sql_with_params(
                    "SELECT result_json FROM funnel_period_results WHERE task_id = {p1} AND period_label = {p2}",
                    (str(task_id), normalize_label(period_label)),
                )
            ).fetchone()
        return PeriodResult.from_payload(json.loads(str(row[0]))) if row else None

    def results(self, task_id: str) -> dict[str, PeriodResult]:
        with self._connect() as conn:
            rows = conn.execute(
                *self._sql_with_params(
                    "SELECT result_json FROM funnel_period_results WHERE task_id = {p1}",
                    (str(task_id),),
                )
            ).fetchall()
        out: dict[str, PeriodResult] = {}
        for row in rows:
            result = PeriodResult.from_payload(json.loads(str(row[0])))
            out[result.period_label] = result
        return out

    def completed_labels(self, task_id: str) -> frozenset[str]:
        with self._connect() as conn:
            rows = conn.execute(
                *self._sql_with_params(
                    "SELECT period_label FROM funnel_period_results WHERE task_id = {p1}",
                    (str(task_id),),
                )
            ).fetchall()
        return frozenset(str(row[0]) for row in rows)

    def _ensure_schema(self) -> None:
        self._execute_ddl(
            """
            CREATE TABLE IF NOT EXISTS funnel_tasks (
                task_id TEXT PRIMARY KEY,
                state TEXT NOT NULL,
                task_json TEXT NOT NULL,
                reason TEXT,
                created_at_utc TEXT NOT NULL,
                updated_at_utc TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS funnel_period_results (
                task_id TEXT NOT NULL,
                period_label TEXT NOT NULL,
                status TEXT NOT NULL,
                result_json TEXT NOT NULL,
                updated_at_utc TEXT NOT NULL,
                PRIMARY KEY (task_id, period_label)
            )
            """,
        )
