"""Pairing and outcome scoring surfaces."""

from .pairing import PairedOutput, PairingPolicy, expected_count, pair, parse_policy, verify_paired_count
from .scorer import (
    DEFAULT_PRIZE_TABLE,
    PREDICTED_UNSCORED,
    SCORED,
    OutcomeScore,
    OutcomeScorer,
    PrizeTier,
    unscored,
)

__all__ = [
    "DEFAULT_PRIZE_TABLE",
    "OutcomeScore",
    "OutcomeScorer",
    "PREDICTED_UNSCORED",
    "PairedOutput",
    "PairingPolicy",
    "PrizeTier",
    "SCORED",
    "expected_count",
    "pair",
    "parse_policy",
    "unscored",
    "verify_paired_count",
]
