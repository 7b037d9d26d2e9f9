"""Pure attribute functions over a sorted combination."""

from __future__ import annotations

from typing import Sequence


def sum_value(numbers: Sequence[int]) -> int:
    return int(sum(numbers))


def span_value(numbers: Sequence[int]) -> int:
    return int(max(numbers) - min(numbers)) if numbers else 0


def zone_ratio(numbers: Sequence[int], zones: Sequence[tuple[int, int]]) -> str:
    counts = [0] * len(zones)
    for number in numbers:
        for idx, (low, high) in enumerate(zones):
            if low <= number <= high:
                counts[idx] += 1
                break
    return ":".join(str(count) for count in counts)


def odd_even_ratio(numbers: Sequence[int]) -> str:
    odd = sum(1 for number in numbers if number % 2 == 1)
    return f"{odd}:{len(numbers) - odd}"


def ac_value(numbers: Sequence[int]) -> int:
    """Arithmetic complexity: distinct pairwise differences minus (arity - 1)."""
    ordered = sorted(numbers)
    if len(ordered) < 2:
        return 0
    differences = {
        ordered[j] - ordered[i]
        for i in range(len(ordered) - 1)
        for j in range(i + 1, len(ordered))
    }
    return max(0, len(differences) - (len(ordered) - 1))


def run_lengths(numbers: Sequence[int]) -> list[int]:
    ordered = sorted(numbers)
    if not ordered:
        return []
    runs = [1]
    for previous, current in zip(ordered, ordered[1:]):
        if current == previous + 1:
            runs[-1] += 1
        else:
            runs.append(1)
    return runs


def consecutive_groups(numbers: Sequence[int]) -> int:
    return sum(1 for length in run_lengths(numbers) if length >= 2)


def max_consecutive_length(numbers: Sequence[int]) -> int:
    runs = run_lengths(numbers)
    return max(runs) if runs else 0
