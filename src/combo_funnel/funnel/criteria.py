"""Per-stage exclusion criteria for the candidate funnel."""

from __future__ import annotations

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class FilterMode(str, Enum):
    INCLUDE = "include"
    EXCLUDE = "exclude"


class MembershipFilter(BaseModel):
    """Ratio-string membership (zone ratio, parity ratio)."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    mode: FilterMode = FilterMode.INCLUDE
    values: list[str] = Field(..., min_length=1)

    @field_validator("values")
    @classmethod
    def _strip(cls, value: list[str]) -> list[str]:
        cleaned = [str(item).strip() for item in value]
        if any(not item for item in cleaned):
            raise ValueError("ratio values must be non-empty strings")
        return cleaned


class NumericRange(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    min: int
    max: int

    @model_validator(mode="after")
    def _check_order(self) -> "NumericRange":
        if self.min > self.max:
            raise ValueError(f"range min must be <= max; got [{self.min}, {self.max}]")
        return self

    def contains(self, value: int) -> bool:
        return self.min <= value <= self.max


class RangeFilter(BaseModel):
    """One or more inclusive ranges, OR-combined."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    mode: FilterMode = FilterMode.INCLUDE
    ranges: list[NumericRange] = Field(..., min_length=1)


class ValueSetFilter(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    mode: FilterMode = FilterMode.INCLUDE
    values: list[int] = Field(..., min_length=1)


class ConflictFilter(BaseModel):
    """Mutually exclusive number pairs supplied by an external frequency analysis."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    pairs: list[tuple[int, int]] = Field(..., min_length=1)

    @field_validator("pairs")
    @classmethod
    def _normalize_pairs(cls, value: list[tuple[int, int]]) -> list[tuple[int, int]]:
        normalized: list[tuple[int, int]] = []
        for first, second in value:
            if first == second:
                raise ValueError(f"conflict pair must name two distinct numbers; got ({first}, {second})")
            normalized.append((min(first, second), max(first, second)))
        return sorted(set(normalized))


class CoOccurrenceFilter(BaseModel):
    """Excludes combinations sharing a sub-tuple with a drawn period inside the lookback window.

    The window always ends at, and includes, the target's base period.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    lookback: int = Field(..., ge=1)
    count_mode: Literal["inclusive", "exclusive"] = "inclusive"
    tuple_sizes: list[int] = Field(default_factory=lambda: [2])

    @field_validator("tuple_sizes")
    @classmethod
    def _check_sizes(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("tuple_sizes must name at least one size")
        if any(size < 2 for size in value):
            raise ValueError(f"tuple_sizes must be >= 2; got {value}")
        return sorted(set(value))


class ExclusionCriteria(BaseModel):
    """Configuration for stages 2-10. An omitted stage passes every candidate through."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    zone_ratio: Optional[MembershipFilter] = None
    sum_range: Optional[RangeFilter] = None
    span_range: Optional[RangeFilter] = None
    parity_ratio: Optional[MembershipFilter] = None
    ac_value: Optional[ValueSetFilter] = None
    consecutive_groups: Optional[ValueSetFilter] = None
    max_consecutive_length: Optional[ValueSetFilter] = None
    conflict_pairs: Optional[ConflictFilter] = None
    cooccurrence: Optional[CoOccurrenceFilter] = None


class SecondaryCriteria(BaseModel):
    """Filters applied to the secondary pool before pairing."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    sum_range: Optional[RangeFilter] = None
    exclude_ids: list[int] = Field(default_factory=list)
