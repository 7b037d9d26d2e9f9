"""Period ledger surfaces."""

from .contracts import Period, PeriodContractError, normalize_label
from .ledger import CountMode, PeriodLedger
from .store import PeriodStore

__all__ = [
    "CountMode",
    "Period",
    "PeriodContractError",
    "PeriodLedger",
    "PeriodStore",
    "normalize_label",
]
