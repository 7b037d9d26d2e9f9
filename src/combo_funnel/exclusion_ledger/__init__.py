"""Exclusion ledger surfaces."""

from .contracts import (
    ExclusionLedgerContractError,
    ExclusionLedgerEntry,
    canonical_payload_hash,
    split_stage_entries,
)
from .query import (
    VERDICT_EXCLUDED,
    VERDICT_EXCLUDED_UNATTRIBUTED,
    VERDICT_NOT_RECORDED,
    VERDICT_RETAINED,
    ExclusionVerdict,
    explain_exclusion,
    stage_summary,
)
from .store import (
    LEDGER_OBS_DUPLICATE,
    LEDGER_OBS_NEW,
    LEDGER_OBS_PAYLOAD_MISMATCH,
    ExclusionLedgerStore,
    LedgerObservation,
)

__all__ = [
    "ExclusionLedgerContractError",
    "ExclusionLedgerEntry",
    "ExclusionLedgerStore",
    "ExclusionVerdict",
    "LEDGER_OBS_DUPLICATE",
    "LEDGER_OBS_NEW",
    "LEDGER_OBS_PAYLOAD_MISMATCH",
    "LedgerObservation",
    "VERDICT_EXCLUDED",
    "VERDICT_EXCLUDED_UNATTRIBUTED",
    "VERDICT_NOT_RECORDED",
    "VERDICT_RETAINED",
    "canonical_payload_hash",
    "explain_exclusion",
    "split_stage_entries",
    "stage_summary",
]
