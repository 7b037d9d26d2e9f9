"""Task input model, task states and per-period results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from combo_funnel.funnel import ExclusionCriteria, SecondaryCriteria
from combo_funnel.periods import normalize_label
from combo_funnel.scoring import OutcomeScore, PairingPolicy, unscored, verify_paired_count


class TaskState(str, Enum):
    CREATED = "CREATED"
    KEYS_RESOLVED = "KEYS_RESOLVED"
    CACHE_PRELOADED = "CACHE_PRELOADED"
    CHUNK_RUNNING = "CHUNK_RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED})


class PeriodStatus(str, Enum):
    OK = "OK"
    MISSING_BASE_PERIOD = "MISSING_BASE_PERIOD"
    NO_CLASSIFICATION_DATA = "NO_CLASSIFICATION_DATA"
    CLASSIFICATION_INVALID = "CLASSIFICATION_INVALID"
    PERIOD_ERROR = "PERIOD_ERROR"


class FunnelTask(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    task_id: str = Field(..., min_length=1)
    target_periods: list[str] = Field(..., min_length=1)
    selection: list[str] = Field(..., min_length=1)
    exclusion: ExclusionCriteria = Field(default_factory=ExclusionCriteria)
    secondary: Optional[SecondaryCriteria] = None
    pairing_policy: PairingPolicy = PairingPolicy.CARTESIAN_PRODUCT

    @field_validator("task_id")
    @classmethod
    def _strip_task_id(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("task_id is required")
        return text

    @field_validator("target_periods", mode="before")
    @classmethod
    def _normalize_targets(cls, value: Any) -> list[str]:
        if not isinstance(value, (list, tuple)):
            raise ValueError("target_periods must be a list")
        labels = [normalize_label(item) for item in value]
        duplicates = sorted({label for label in labels if labels.count(label) > 1})
        if duplicates:
            raise ValueError(f"target_periods contains duplicates: {duplicates}")
        return labels

    @field_validator("pairing_policy", mode="before")
    @classmethod
    def _lower_policy(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


@dataclass(frozen=True)
class PeriodResult:
    """Outcome for one target period.

    Written once; only an explicit re-score replaces `score` after the
    predicted period is drawn.
    """

    task_id: str
    period_label: str
    status: PeriodStatus
    batch_index: int
    base_label: Optional[str] = None
    is_predicted: bool = False
    primary_ids: tuple[int, ...] = ()
    secondary_ids: tuple[int, ...] = ()
    pairing_policy: PairingPolicy = PairingPolicy.CARTESIAN_PRODUCT
    paired_count: int = 0
    stage_counts: Mapping[str, int] = field(default_factory=dict)
    stages_executed: int = 0
    score: OutcomeScore = field(default_factory=unscored)
    error: Optional[Mapping[str, Any]] = None
    ledger_ref: Optional[str] = None
    rescored_at_utc: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == PeriodStatus.OK

    def verify_paired_count(self) -> None:
        verify_paired_count(
            policy=self.pairing_policy,
            primary_count=len(self.primary_ids),
            secondary_count=len(self.secondary_ids),
            paired_count=self.paired_count,
            context=f"{self.task_id}/{self.period_label}",
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "period_label": self.period_label,
            "status": self.status.value,
            "batch_index": int(self.batch_index),
            "base_label": self.base_label,
            "is_predicted": bool(self.is_predicted),
            "primary_ids": list(self.primary_ids),
            "secondary_ids": list(self.secondary_ids),
            "pairing_policy": self.pairing_policy.value,
            "paired_count": int(self.paired_count),
            "stage_counts": dict(self.stage_counts),
            "stages_executed": int(self.stages_executed),
            "score": self.score.as_dict(),
            "error": dict(self.error) if self.error else None,
            "ledger_ref": self.ledger_ref,
            "rescored_at_utc": self.rescored_at_utc,
        }

    def summary(self) -> dict[str, Any]:
        """`as_dict` without the id lists."""
        payload = self.as_dict()
        payload["primary_count"] = len(payload.pop("primary_ids"))
        payload["secondary_count"] = len(payload.pop("secondary_ids"))
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PeriodResult":
        return cls(
            task_id=str(payload["task_id"]),
            period_label=normalize_label(payload["period_label"]),
            status=PeriodStatus(str(payload["status"])),
            batch_index=int(payload.get("batch_index") or 0),
            base_label=payload.get("base_label"),
            is_predicted=bool(payload.get("is_predicted")),
            primary_ids=tuple(int(item) for item in payload.get("primary_ids") or ()),
            secondary_ids=tuple(int(item) for item in payload.get("secondary_ids") or ()),
            pairing_policy=PairingPolicy(str(payload.get("pairing_policy") or PairingPolicy.CARTESIAN_PRODUCT.value)),
            paired_count=int(payload.get("paired_count") or 0),
            stage_counts={str(key): int(value) for key, value in (payload.get("stage_counts") or {}).items()},
            stages_executed=int(payload.get("stages_executed") or 0),
            score=OutcomeScore.from_payload(dict(payload.get("score") or {})),
            error=payload.get("error"),
            ledger_ref=payload.get("ledger_ref"),
            rescored_at_utc=payload.get("rescored_at_utc"),
        )
