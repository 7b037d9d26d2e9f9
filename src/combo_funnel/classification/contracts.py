"""Classification cache contracts."""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Any, Iterable, Mapping

from combo_funnel.errors import ClassificationIntegrityError
from combo_funnel.periods.contracts import normalize_label


CLASS_KEY_RE = re.compile(r"^(\d+):(\d+):(\d+)$")


class ClassificationContractError(ValueError):
    """Raised when classification inputs are malformed."""


def parse_class_key(value: Any, *, arity: int) -> tuple[int, int, int]:
    text = str(value or "").strip()
    match = CLASS_KEY_RE.fullmatch(text)
    if not match:
        raise ClassificationContractError(f"class key must look like 'h:w:c'; got {value!r}")
    parts = (int(match.group(1)), int(match.group(2)), int(match.group(3)))
    if sum(parts) != int(arity):
        raise ClassificationContractError(f"class key {text} must sum to arity {arity}")
    return parts


def format_class_key(parts: tuple[int, int, int]) -> str:
    return ":".join(str(int(part)) for part in parts)


@dataclass(frozen=True)
class PairKey:
    """Typed (base, target) cache key; `wire_key` is the storage form."""

    base_label: str
    target_label: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "base_label", normalize_label(self.base_label))
        object.__setattr__(self, "target_label", normalize_label(self.target_label))

    @property
    def wire_key(self) -> str:
        return f"{self.base_label}-{self.target_label}"

    def __str__(self) -> str:
        return self.wire_key


@dataclass(frozen=True)
class ClassificationEntry:
    pair: PairKey
    arity: int
    classes: Mapping[str, frozenset[int]]

    @classmethod
    def from_payload(cls, *, pair: PairKey, arity: int, classes: Mapping[str, Iterable[Any]]) -> "ClassificationEntry":
        if not isinstance(classes, Mapping):
            raise ClassificationContractError(f"classes for {pair} must be a mapping")
        normalized: dict[str, frozenset[int]] = {}
        for raw_key, ids in classes.items():
            key = format_class_key(parse_class_key(raw_key, arity=arity))
            if key in normalized:
                raise ClassificationContractError(f"duplicate class key {key} for {pair}")
            normalized[key] = frozenset(int(item) for item in ids)
        return cls(pair=pair, arity=int(arity), classes=normalized)

    @property
    def combination_count(self) -> int:
        return sum(len(ids) for ids in self.classes.values())

    def class_keys(self) -> tuple[str, ...]:
        return tuple(sorted(self.classes))

    def validate_partition(self, universe_ids: frozenset[int]) -> None:
        """Every universe id must appear in exactly one class."""
        seen: set[int] = set()
        for key, ids in self.classes.items():
            overlap = seen & ids
            if overlap:
                raise ClassificationIntegrityError(
                    f"{self.pair}: class {key} overlaps earlier classes ({len(overlap)} ids)"
                )
            seen |= ids
        if seen != universe_ids:
            missing = len(universe_ids - seen)
            extra = len(seen - universe_ids)
            raise ClassificationIntegrityError(
                f"{self.pair}: classes do not cover the universe (missing={missing}, unknown={extra})"
            )

    def as_dict(self) -> dict[str, Any]:
        return {
            "base_label": self.pair.base_label,
            "target_label": self.pair.target_label,
            "arity": self.arity,
            "classes": {key: sorted(self.classes[key]) for key in sorted(self.classes)},
        }
