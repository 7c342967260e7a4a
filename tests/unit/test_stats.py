"""Unit tests for metrics/stats.py numeric helpers."""

from __future__ import annotations

from agentlens.metrics.stats import p95, round_half_up, safe_ratio


def test_p95_empty_is_zero():
    assert p95([]) == 0


def test_p95_single_value():
    assert p95([42]) == 42


def test_p95_uses_floor_index():
    """Index is floor(0.95 * (n - 1)) over the sorted values."""
    assert p95(list(range(1, 11))) == 9
    assert p95([100, 1, 50]) == 50
    assert p95(list(range(1, 21))) == 19


def test_p95_does_not_mutate_input():
    values = [3, 1, 2]
    p95(values)
    assert values == [3, 1, 2]


def test_round_half_up_rounds_halves_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(2.49) == 2
    assert round_half_up(0) == 0


def test_safe_ratio_zero_denominator():
    assert safe_ratio(5, 0) == 0
    assert safe_ratio(0, 0) == 0
    assert safe_ratio(3, 2) == 1.5
