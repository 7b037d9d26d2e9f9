"""Run directory helpers for task artefacts (metrics, health, logs)."""

from __future__ import annotations

import os
from pathlib import Path

RUNS_ROOT = Path("runs/combo-funnel")


def runs_root() -> Path:
    override = (os.getenv("COMBO_FUNNEL_RUNS_ROOT") or "").strip()
    if override:
        return Path(override)
    return RUNS_ROOT


def task_run_root(task_id: str, *, create_if_missing: bool, root: str | Path | None = None) -> Path:
    token = str(task_id or "").strip()
    if not token:
        raise ValueError("task_id is required")
    task_root = (Path(root) if root else runs_root()) / token
    if create_if_missing:
        task_root.mkdir(parents=True, exist_ok=True)
    return task_root


def task_log_paths(task_id: str | None, *, root: str | Path | None = None) -> list[str]:
    log_path = (os.getenv("COMBO_FUNNEL_LOG_PATH") or "").strip()
    if log_path:
        return [log_path]
    if not task_id:
        return []
    return [str((Path(root) if root else runs_root()) / task_id / "funnel.log")]
