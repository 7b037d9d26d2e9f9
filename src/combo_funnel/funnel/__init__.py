"""Candidate funnel surfaces."""

from .criteria import (
    CoOccurrenceFilter,
    ConflictFilter,
    ExclusionCriteria,
    FilterMode,
    MembershipFilter,
    NumericRange,
    RangeFilter,
    SecondaryCriteria,
    ValueSetFilter,
)
from .funnel import (
    DEFAULT_SAMPLE_LIMIT,
    DEFAULT_SAMPLE_STAGES,
    CandidateFunnel,
    FunnelInvariantError,
    FunnelRun,
    StageExecutionError,
    StageOutcome,
    filter_secondary,
    validate_criteria,
    validate_selection,
)
from .stages import STAGE_NAMES, STAGES, stage_name

__all__ = [
    "CandidateFunnel",
    "CoOccurrenceFilter",
    "ConflictFilter",
    "DEFAULT_SAMPLE_LIMIT",
    "DEFAULT_SAMPLE_STAGES",
    "ExclusionCriteria",
    "FilterMode",
    "FunnelInvariantError",
    "FunnelRun",
    "MembershipFilter",
    "NumericRange",
    "RangeFilter",
    "STAGES",
    "STAGE_NAMES",
    "SecondaryCriteria",
    "StageExecutionError",
    "StageOutcome",
    "ValueSetFilter",
    "filter_secondary",
    "stage_name",
    "validate_criteria",
    "validate_selection",
]
