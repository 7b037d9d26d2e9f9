"""Batch coordinator surfaces."""

from .config import FunnelProfile, ThresholdConfig, UniverseConfig, load_profile, load_task
from .coordinator import BatchCoordinator, PeriodWork, TaskOutcome, TaskPlan
from .models import FunnelTask, PeriodResult, PeriodStatus, TaskState
from .observability import TaskRunMetrics, build_health_payload, export_health
from .results import TaskStore, allowed_transition

__all__ = [
    "BatchCoordinator",
    "FunnelProfile",
    "FunnelTask",
    "PeriodResult",
    "PeriodStatus",
    "PeriodWork",
    "TaskOutcome",
    "TaskPlan",
    "TaskRunMetrics",
    "TaskState",
    "TaskStore",
    "ThresholdConfig",
    "UniverseConfig",
    "allowed_transition",
    "build_health_payload",
    "export_health",
    "load_profile",
    "load_task",
]
