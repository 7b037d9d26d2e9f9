"""Period ledger: an immutable arena of periods indexed by sequence id.

Predecessors are resolved only through the sequence-id index. Nothing in this
module accepts a caller-supplied list of targets, so the position of a period
inside a batch can never influence which base period it resolves to.
"""

from __future__ import annotations

from bisect import bisect_left
from typing import Any, Iterable, Literal

from combo_funnel.errors import LedgerUnavailableError, NoPredecessorError, PeriodNotFoundError

from .contracts import Period, PeriodContractError, normalize_label


CountMode = Literal["inclusive", "exclusive"]


class PeriodLedger:
    def __init__(self, periods: Iterable[Period]) -> None:
        by_sequence: dict[int, Period] = {}
        by_label: dict[str, Period] = {}
        for period in periods:
            if period.sequence_id in by_sequence:
                raise PeriodContractError(f"duplicate sequence_id: {period.sequence_id}")
            if period.label in by_label:
                raise PeriodContractError(f"duplicate period label: {period.label}")
            by_sequence[period.sequence_id] = period
            by_label[period.label] = period
        self._by_sequence = by_sequence
        self._by_label = by_label
        self._drawn_sequence = sorted(seq for seq, period in by_sequence.items() if period.is_drawn)

    def __len__(self) -> int:
        return len(self._by_sequence)

    def __contains__(self, label: object) -> bool:
        try:
            return normalize_label(label) in self._by_label
        except PeriodContractError:
            return False

    def get(self, label: Any) -> Period | None:
        return self._by_label.get(normalize_label(label))

    def period_at(self, sequence_id: int) -> Period | None:
        return self._by_sequence.get(int(sequence_id))

    def sequence_id_of(self, label: Any) -> int:
        period = self.get(label)
        if period is None:
            raise PeriodNotFoundError(normalize_label(label))
        return period.sequence_id

    def period_before(self, label: Any) -> Period:
        sequence_id = self.sequence_id_of(label)
        predecessor = self._by_sequence.get(sequence_id - 1)
        if predecessor is None:
            raise NoPredecessorError(normalize_label(label), sequence_id)
        return predecessor

    def is_drawn(self, label: Any) -> bool:
        period = self.get(label)
        return period is not None and period.is_drawn

    def latest_drawn(self) -> Period:
        if not self._drawn_sequence:
            raise LedgerUnavailableError("period ledger has no drawn periods")
        return self._by_sequence[self._drawn_sequence[-1]]

    def resolve_base_period(
        self,
        target_label: Any,
        *,
        predicted_label: str | None = None,
        latest_drawn: Period | None = None,
    ) -> Period:
        """Base period for a target.

        Drawn targets resolve to the period at `sequence_id - 1`. The task's
        designated predicted target resolves to `latest_drawn`, which callers
        should pin once per task rather than re-reading it mid-run.
        """
        label = normalize_label(target_label)
        if self.is_drawn(label):
            return self.period_before(label)
        if predicted_label is not None and label == normalize_label(predicted_label):
            return latest_drawn if latest_drawn is not None else self.latest_drawn()
        raise PeriodNotFoundError(label)

    def drawn_periods(self) -> tuple[Period, ...]:
        return tuple(self._by_sequence[seq] for seq in self._drawn_sequence)

    def window_ending_at(self, label: Any, count: int, count_mode: CountMode = "inclusive") -> tuple[Period, ...]:
        """Drawn periods of a lookback window that ends at, and includes, `label`.

        `inclusive`: `count` periods in total, the anchor among them.
        `exclusive`: the anchor plus `count` periods strictly before it.
        Fewer periods are returned only when the ledger history is shorter.
        """
        if int(count) < 1:
            raise ValueError(f"lookback count must be >= 1; got {count}")
        if count_mode not in ("inclusive", "exclusive"):
            raise ValueError(f"unsupported lookback count_mode: {count_mode}")
        anchor = self.get(label)
        if anchor is None or not anchor.is_drawn:
            raise PeriodNotFoundError(normalize_label(label))
        end = bisect_left(self._drawn_sequence, anchor.sequence_id) + 1
        size = int(count) if count_mode == "inclusive" else int(count) + 1
        start = max(0, end - size)
        return tuple(self._by_sequence[seq] for seq in self._drawn_sequence[start:end])

    def omission_counts(self, label: Any, pool_size: int) -> dict[int, int]:
        """Drawn periods since each number last appeared, as of `label` (0 = drawn in it)."""
        anchor = self.get(label)
        if anchor is None or not anchor.is_drawn:
            raise PeriodNotFoundError(normalize_label(label))
        counts = {number: 0 for number in range(1, int(pool_size) + 1)}
        end = bisect_left(self._drawn_sequence, anchor.sequence_id) + 1
        for seq in self._drawn_sequence[:end]:
            drawn = set(self._by_sequence[seq].drawn_numbers or ())
            for number in counts:
                counts[number] = 0 if number in drawn else counts[number] + 1
        return counts
