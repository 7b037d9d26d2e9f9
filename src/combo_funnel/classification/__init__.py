"""Classification cache surfaces."""

from .builder import BuildSummary, ClassificationBuilder, TemperatureThresholds
from .cache import ClassificationCache, ClassificationView, KeyResolution, classes_matching
from .contracts import (
    ClassificationContractError,
    ClassificationEntry,
    PairKey,
    format_class_key,
    parse_class_key,
)
from .store import ClassificationStore

__all__ = [
    "BuildSummary",
    "ClassificationBuilder",
    "ClassificationCache",
    "ClassificationContractError",
    "ClassificationEntry",
    "ClassificationStore",
    "ClassificationView",
    "KeyResolution",
    "PairKey",
    "TemperatureThresholds",
    "classes_matching",
    "format_class_key",
    "parse_class_key",
]
