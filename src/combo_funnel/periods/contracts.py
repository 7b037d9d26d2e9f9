"""Period contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping


class PeriodContractError(ValueError):
    """Raised when period inputs are invalid."""


def normalize_label(value: Any) -> str:
    """Canonical string form of a period label (`25091` and `"25091"` are equal)."""
    if isinstance(value, bool):
        raise PeriodContractError("period label must not be a boolean")
    if isinstance(value, float):
        if not value.is_integer():
            raise PeriodContractError(f"period label must not be fractional: {value}")
        value = int(value)
    text = str(value if value is not None else "").strip()
    if not text:
        raise PeriodContractError("period label is required")
    return text


@dataclass(frozen=True)
class Period:
    sequence_id: int
    label: str
    drawn_numbers: tuple[int, ...] | None = None
    drawn_bonus: tuple[int, ...] | None = None

    def __post_init__(self) -> None:
        if isinstance(self.sequence_id, bool) or int(self.sequence_id) != self.sequence_id:
            raise PeriodContractError("sequence_id must be an integer")
        object.__setattr__(self, "label", normalize_label(self.label))
        object.__setattr__(self, "drawn_numbers", _numbers(self.drawn_numbers, "drawn_numbers"))
        object.__setattr__(self, "drawn_bonus", _numbers(self.drawn_bonus, "drawn_bonus"))
        if self.drawn_numbers is None and self.drawn_bonus is not None:
            raise PeriodContractError(f"period {self.label} has bonus numbers but no drawn numbers")

    @property
    def is_drawn(self) -> bool:
        return self.drawn_numbers is not None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Period":
        if not isinstance(payload, Mapping):
            raise PeriodContractError("period payload must be a mapping")
        sequence_id = payload.get("sequence_id")
        if sequence_id in (None, ""):
            raise PeriodContractError("period.sequence_id is required")
        return cls(
            sequence_id=int(sequence_id),
            label=normalize_label(payload.get("label")),
            drawn_numbers=payload.get("drawn_numbers"),
            drawn_bonus=payload.get("drawn_bonus"),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "sequence_id": int(self.sequence_id),
            "label": self.label,
            "drawn_numbers": list(self.drawn_numbers) if self.drawn_numbers is not None else None,
            "drawn_bonus": list(self.drawn_bonus) if self.drawn_bonus is not None else None,
        }


def _numbers(value: Iterable[Any] | None, field_name: str) -> tuple[int, ...] | None:
    if value is None:
        return None
    if isinstance(value, str):
        raise PeriodContractError(f"{field_name} must be a sequence of integers")
    numbers = tuple(sorted(int(item) for item in value))
    if not numbers:
        return None
    if len(set(numbers)) != len(numbers):
        raise PeriodContractError(f"{field_name} contains duplicates: {list(numbers)}")
    if numbers[0] < 1:
        raise PeriodContractError(f"{field_name} must be positive: {list(numbers)}")
    return numbers
