"""Task run metrics and health export."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from pathlib import Path
from typing import Any, Mapping

from combo_funnel.runtime import task_run_root


@dataclass
class TaskRunMetrics:
    task_id: str
    counters: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.task_id = _required(self.task_id, "task_id")
        for key in _REQUIRED_COUNTERS:
            self.counters.setdefault(key, 0)

    def bump(self, key: str, delta: int = 1) -> None:
        if key not in self.counters:
            raise ValueError(f"unsupported metric counter: {key}")
        self.counters[key] = int(self.counters.get(key, 0)) + int(delta)

    def snapshot(self) -> dict[str, Any]:
        return {
            "generated_at_utc": _utc_now(),
            "task_id": self.task_id,
            "metrics": dict(self.counters),
        }

    def export(self, *, root: str | Path | None = None) -> dict[str, Any]:
        payload = self.snapshot()
        path = task_run_root(self.task_id, create_if_missing=True, root=root) / "metrics" / "last_metrics.json"
        _write_json(path, payload)
        return payload


def build_health_payload(*, task_id: str, state: str, counters: Mapping[str, Any]) -> dict[str, Any]:
    health_state = "GREEN"
    reasons: list[str] = []
    if int(counters.get("period_errors_total", 0)) > 0:
        health_state = "AMBER"
        reasons.append("PERIOD_ERRORS_NONZERO")
    if state == "CANCELLED":
        health_state = "AMBER"
        reasons.append("TASK_CANCELLED")
    if int(counters.get("ledger_payload_mismatch_total", 0)) > 0:
        health_state = "RED"
        reasons.append("LEDGER_PAYLOAD_MISMATCH_NONZERO")
    if int(counters.get("integrity_errors_total", 0)) > 0:
        health_state = "RED"
        reasons.append("INTEGRITY_ERRORS_NONZERO")
    if state == "FAILED":
        health_state = "RED"
        reasons.append("TASK_FAILED")
    return {
        "generated_at_utc": _utc_now(),
        "task_id": _required(task_id, "task_id"),
        "task_state": state,
        "health_state": health_state,
        "health_reasons": sorted(set(reasons)),
        "metrics": dict(counters),
    }


def export_health(*, task_id: str, payload: Mapping[str, Any], root: str | Path | None = None) -> dict[str, Any]:
    body = dict(payload)
    path = task_run_root(task_id, create_if_missing=True, root=root) / "health" / "last_health.json"
    _write_json(path, body)
    return body


def _write_json(path: Path, payload: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, sort_keys=True, ensure_ascii=True, indent=2) + "\n", encoding="utf-8")


def _required(value: Any, field_name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValueError(f"{field_name} is required")
    return text


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


_REQUIRED_COUNTERS: tuple[str, ...] = (
    "periods_total",
    "periods_completed",
    "periods_resumed_skip",
    "period_errors_total",
    "missing_base_total",
    "no_classification_total",
    "classification_invalid_total",
    "integrity_errors_total",
    "chunks_completed",
    "ledger_rows_new",
    "ledger_duplicate_total",
    "ledger_payload_mismatch_total",
)
