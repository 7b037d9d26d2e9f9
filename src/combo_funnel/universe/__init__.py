"""Combination universe surfaces."""

from .universe import ATTRIBUTE_COLUMNS, CombinationUniverse, UniverseSpec, UniverseSpecError

__all__ = [
    "ATTRIBUTE_COLUMNS",
    "CombinationUniverse",
    "UniverseSpec",
    "UniverseSpecError",
]
