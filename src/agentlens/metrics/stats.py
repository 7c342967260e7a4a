"""Small numeric helpers shared by summaries and rollups."""

from __future__ import annotations

import math
from collections.abc import Sequence


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up (not banker's rounding)."""
    return int(math.floor(value + 0.5))


def p95(values: Sequence[float]) -> float:
    """Return the 95th percentile via ``sorted[floor(0.95 * (n - 1))]``; 0 for empty input."""
    if not values:
        return 0
    ordered = sorted(values)
    return ordered[math.floor(0.95 * (len(ordered) - 1))]


def safe_ratio(numerator: float, denominator: float) -> float:
    """Return numerator / denominator, or 0 when the denominator is not positive."""
    if not denominator or denominator <= 0:
        return 0
    return numerator / denominator


if __name__ == "__main__":
    assert p95([]) == 0
    assert p95([5]) == 5
    assert p95(list(range(1, 11))) == 9
    assert round_half_up(2.5) == 3
    assert safe_ratio(1, 0) == 0
    print("stats: self-test passed")
