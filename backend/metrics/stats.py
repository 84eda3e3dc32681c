"""
Statistics helpers shared by the aggregator, rule engine and summaries.

Zero-element and zero-denominator inputs return 0 instead of raising, so
callers never guard division themselves. Rounding is a reporting concern:
round_rate / round_currency are applied when values leave the core, never
to intermediate results.
"""

from collections.abc import Iterable, Sequence

RATE_PRECISION = 4
CURRENCY_PRECISION = 2


def median(values: Sequence[float]) -> float:
    """Middle value of a sorted copy; mean of the two central values for even length; 0 when empty."""
    if not values:
        return 0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def rate(numerator: float, denominator: float) -> float:
    if denominator == 0:
        return 0
    return numerator / denominator


def pct_within(values: Iterable[float | None], low: float, high: float) -> float:
    """
    Share of values inside the closed interval [low, high].

    None entries count toward the denominator but never match.
    """
    total = 0
    matched = 0
    for value in values:
        total += 1
        if value is not None and low <= value <= high:
            matched += 1
    return rate(matched, total)


def round_rate(value: float) -> float:
    return round(float(value), RATE_PRECISION)


def round_currency(value: float) -> float:
    return round(float(value), CURRENCY_PRECISION)
