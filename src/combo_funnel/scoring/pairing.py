"""Pairing of retained primary ids with retained secondary ids."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Iterator

from combo_funnel.errors import ConfigurationError, PairingIntegrityError


class PairingPolicy(str, Enum):
    CARTESIAN_PRODUCT = "cartesian_product"
    ONE_TO_ONE_BOUNDED = "one_to_one_bounded"


def parse_policy(value: Any) -> PairingPolicy:
    if isinstance(value, PairingPolicy):
        return value
    text = str(value or "").strip().lower()
    try:
        return PairingPolicy(text)
    except ValueError as exc:
        allowed = ", ".join(policy.value for policy in PairingPolicy)
        raise ConfigurationError(f"unsupported pairing policy {value!r}; expected one of: {allowed}") from exc


def expected_count(primary_count: int, secondary_count: int, policy: PairingPolicy) -> int:
    primary_count = max(int(primary_count), 0)
    secondary_count = max(int(secondary_count), 0)
    if policy == PairingPolicy.CARTESIAN_PRODUCT:
        return primary_count * secondary_count
    if policy == PairingPolicy.ONE_TO_ONE_BOUNDED:
        return max(primary_count, secondary_count)
    raise ConfigurationError(f"unsupported pairing policy: {policy}")


@dataclass(frozen=True)
class PairedOutput:
    """Descriptor of a pairing; pairs are produced lazily, never materialized."""

    policy: PairingPolicy
    primary_ids: tuple[int, ...]
    secondary_ids: tuple[int, ...]

    @property
    def count(self) -> int:
        return expected_count(len(self.primary_ids), len(self.secondary_ids), self.policy)

    @property
    def materialisable(self) -> bool:
        """False when the count law promises pairs but one side has nothing to cycle."""
        return self.count == 0 or bool(self.primary_ids and self.secondary_ids)

    def check_materialisable(self, context: str = "") -> None:
        if self.materialisable:
            return
        where = f" for {context}" if context else ""
        raise PairingIntegrityError(
            f"{self.policy.value} promises {self.count} pairs{where} but one side is empty "
            f"(primary={len(self.primary_ids)}, secondary={len(self.secondary_ids)})"
        )

    def pairs(self) -> Iterator[tuple[int, int]]:
        self.check_materialisable()
        if not self.count:
            return
        if self.policy == PairingPolicy.CARTESIAN_PRODUCT:
            for primary_id in self.primary_ids:
                for secondary_id in self.secondary_ids:
                    yield primary_id, secondary_id
            return
        # Pair i cycles each side by index modulo its length.
        primary_len = len(self.primary_ids)
        secondary_len = len(self.secondary_ids)
        for idx in range(max(primary_len, secondary_len)):
            yield self.primary_ids[idx % primary_len], self.secondary_ids[idx % secondary_len]

    def as_descriptor(self) -> dict[str, Any]:
        return {
            "policy": self.policy.value,
            "primary_count": len(self.primary_ids),
            "secondary_count": len(self.secondary_ids),
            "paired_count": self.count,
        }


def pair(primary_ids: Iterable[int], secondary_ids: Iterable[int], policy: PairingPolicy | str) -> PairedOutput:
    return PairedOutput(
        policy=parse_policy(policy),
        primary_ids=tuple(sorted(set(int(item) for item in primary_ids))),
        secondary_ids=tuple(sorted(set(int(item) for item in secondary_ids))),
    )


def verify_paired_count(
    *,
    policy: PairingPolicy | str,
    primary_count: int,
    secondary_count: int,
    paired_count: int,
    context: str = "",
) -> None:
    """Raise when a reported total disagrees with the count law of its policy."""
    resolved = parse_policy(policy)
    expected = expected_count(int(primary_count), int(secondary_count), resolved)
    if int(paired_count) != expected:
        where = f" for {context}" if context else ""
        raise PairingIntegrityError(
            f"paired count {paired_count} != {expected} under {resolved.value}{where} "
            f"(primary={primary_count}, secondary={secondary_count})"
        )
