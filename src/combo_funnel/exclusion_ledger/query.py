"""Point and aggregate queries over the exclusion ledger."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional

from .store import ExclusionLedgerStore


VERDICT_EXCLUDED = "EXCLUDED"
VERDICT_RETAINED = "RETAINED"
VERDICT_EXCLUDED_UNATTRIBUTED = "EXCLUDED_UNATTRIBUTED"
VERDICT_NOT_RECORDED = "NOT_RECORDED"


@dataclass(frozen=True)
class ExclusionVerdict:
    status: str
    combination_id: int
    stage_index: Optional[int] = None
    stage_name: Optional[str] = None
    reason: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "combination_id": self.combination_id,
            "stage_index": self.stage_index,
            "stage_name": self.stage_name,
            "reason": self.reason,
        }


def explain_exclusion(
    store: ExclusionLedgerStore,
    *,
    task_id: str,
    period_label: Any,
    combination_id: int,
    retained_ids: Optional[Iterable[int]] = None,
) -> ExclusionVerdict:
    """First stage, in stage order, whose recorded ids or sample exclude the combination.

    When a stage kept only a sample, the answer falls back to membership in
    the final retained set: retained, or excluded at a stage that cannot be
    named from the ledger.
    """
    target = int(combination_id)
    entries = store.entries_for_period(task_id, period_label)
    if not entries:
        return ExclusionVerdict(status=VERDICT_NOT_RECORDED, combination_id=target)
    complete = True
    for entry in entries:
        if target in entry.excluded_ids or target in entry.sample:
            return ExclusionVerdict(
                status=VERDICT_EXCLUDED,
                combination_id=target,
                stage_index=entry.stage_index,
                stage_name=entry.stage_name,
                reason=entry.sample.get(target),
            )
        if not entry.ids_recorded and entry.excluded_count > len(entry.sample):
            complete = False
    if retained_ids is not None:
        if target in frozenset(int(item) for item in retained_ids):
            return ExclusionVerdict(status=VERDICT_RETAINED, combination_id=target)
        return ExclusionVerdict(status=VERDICT_EXCLUDED_UNATTRIBUTED, combination_id=target)
    if complete:
        return ExclusionVerdict(status=VERDICT_RETAINED, combination_id=target)
    return ExclusionVerdict(status=VERDICT_EXCLUDED_UNATTRIBUTED, combination_id=target)


def stage_summary(store: ExclusionLedgerStore, *, task_id: str) -> list[dict[str, Any]]:
    return store.stage_totals(task_id)
