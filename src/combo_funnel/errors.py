"""Error taxonomy shared across the funnel components."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised when a task or profile is invalid; fatal before any period runs."""


class PeriodNotFoundError(ConfigurationError):
    """Raised when a label has no ledger entry and is not the designated predicted period."""

    def __init__(self, label: str) -> None:
        super().__init__(f"period not found in ledger: {label}")
        self.label = label


class NoPredecessorError(LookupError):
    """Raised when a drawn period has no period at sequence_id - 1."""

    def __init__(self, label: str, sequence_id: int) -> None:
        super().__init__(f"no predecessor for period {label} (sequence_id={sequence_id})")
        self.label = label
        self.sequence_id = sequence_id


class LedgerUnavailableError(RuntimeError):
    """Raised when the period ledger cannot be loaded."""


class ClassificationIntegrityError(ValueError):
    """Raised when a classification entry does not partition the universe exactly."""


class PairingIntegrityError(ValueError):
    """Raised when a stored paired count disagrees with the recomputed count."""


class InvalidTransitionError(RuntimeError):
    """Raised when a task status change is not allowed by the state machine."""
