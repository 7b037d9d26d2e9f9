"""Exclusion ledger contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import json
from typing import Any, Mapping

from combo_funnel.periods import normalize_label
from combo_funnel.storage import chunked


class ExclusionLedgerContractError(ValueError):
    """Raised when exclusion ledger inputs are invalid."""


@dataclass(frozen=True)
class ExclusionLedgerEntry:
    """One row of a stage's exclusions for one period.

    A stage whose excluded ids exceed `max_ids_per_row` is split across rows
    sharing (task, period, stage) and distinguished by `chunk_index`. The
    stage total and the sampled reasons live on every row and row 0
    respectively. `ids_recorded` is false when only a sample was kept.
    """

    task_id: str
    period_label: str
    stage_index: int
    stage_name: str
    excluded_count: int
    excluded_ids: tuple[int, ...] = ()
    sample: Mapping[int, str] = field(default_factory=dict)
    is_partial: bool = False
    ids_recorded: bool = True
    chunk_index: int = 0
    total_chunks: int = 1
    batch_index: int = 0

    def __post_init__(self) -> None:
        if not str(self.task_id or "").strip():
            raise ExclusionLedgerContractError("task_id is required")
        object.__setattr__(self, "period_label", normalize_label(self.period_label))
        if int(self.stage_index) < 1:
            raise ExclusionLedgerContractError("stage_index must be >= 1")
        if int(self.excluded_count) < 0:
            raise ExclusionLedgerContractError("excluded_count must be >= 0")
        if int(self.total_chunks) < 1 or not 0 <= int(self.chunk_index) < int(self.total_chunks):
            raise ExclusionLedgerContractError(
                f"chunk_index {self.chunk_index} out of range for total_chunks {self.total_chunks}"
            )
        object.__setattr__(self, "excluded_ids", tuple(sorted(int(item) for item in self.excluded_ids)))
        object.__setattr__(self, "sample", {int(key): str(value) for key, value in dict(self.sample).items()})

    @property
    def payload_hash(self) -> str:
        # batch_index is bookkeeping; a rerun with a different batch size is still the same payload.
        payload = self.as_dict()
        payload.pop("batch_index", None)
        return canonical_payload_hash(payload)

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "period_label": self.period_label,
            "stage_index": int(self.stage_index),
            "stage_name": self.stage_name,
            "excluded_count": int(self.excluded_count),
            "excluded_ids": list(self.excluded_ids),
            "sample": {str(key): value for key, value in sorted(self.sample.items())},
            "is_partial": bool(self.is_partial),
            "ids_recorded": bool(self.ids_recorded),
            "chunk_index": int(self.chunk_index),
            "total_chunks": int(self.total_chunks),
            "batch_index": int(self.batch_index),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ExclusionLedgerEntry":
        if not isinstance(payload, Mapping):
            raise ExclusionLedgerContractError("ledger payload must be a mapping")
        return cls(
            task_id=str(payload.get("task_id") or ""),
            period_label=payload.get("period_label"),
            stage_index=int(payload.get("stage_index") or 0),
            stage_name=str(payload.get("stage_name") or ""),
            excluded_count=int(payload.get("excluded_count") or 0),
            excluded_ids=tuple(payload.get("excluded_ids") or ()),
            sample=dict(payload.get("sample") or {}),
            is_partial=bool(payload.get("is_partial")),
            ids_recorded=bool(payload.get("ids_recorded", True)),
            chunk_index=int(payload.get("chunk_index") or 0),
            total_chunks=int(payload.get("total_chunks") or 1),
            batch_index=int(payload.get("batch_index") or 0),
        )


def split_stage_entries(
    *,
    task_id: str,
    period_label: str,
    stage_index: int,
    stage_name: str,
    excluded_count: int,
    excluded_ids: tuple[int, ...],
    sample: Mapping[int, str],
    ids_recorded: bool,
    batch_index: int,
    max_ids_per_row: int,
) -> list[ExclusionLedgerEntry]:
    if int(max_ids_per_row) < 1:
        raise ExclusionLedgerContractError("max_ids_per_row must be >= 1")
    ids = tuple(sorted(excluded_ids))
    parts = list(chunked(ids, int(max_ids_per_row))) or [()]
    total = len(parts)
    return [
        ExclusionLedgerEntry(
            task_id=task_id,
            period_label=period_label,
            stage_index=stage_index,
            stage_name=stage_name,
            excluded_count=excluded_count,
            excluded_ids=tuple(part),
            sample=sample if idx == 0 else {},
            is_partial=total > 1,
            ids_recorded=ids_recorded,
            chunk_index=idx,
            total_chunks=total,
            batch_index=batch_index,
        )
        for idx, part in enumerate(parts)
    ]


def canonical_payload_hash(payload: Mapping[str, Any]) -> str:
    if not isinstance(payload, Mapping):
        raise ExclusionLedgerContractError("payload must be a mapping")
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
