"""Nearest-timestamp matching and percentage-change arithmetic."""

from collections.abc import Iterable

from sortedcontainers import SortedKeyList

from betwatch.markets.protocol import PricePoint


def _by_timestamp(point: PricePoint) -> int:
    return point.timestamp


def sort_series(
    series: Iterable[PricePoint], descending: bool = False
) -> list[PricePoint]:
    """Stable sort by timestamp."""
    return sorted(series, key=_by_timestamp, reverse=descending)


def nearest_before(
    series: Iterable[PricePoint], target_time: float
) -> PricePoint | None:
    """
    Point whose timestamp is closest to target_time.

    Input order does not matter. Ties are broken toward the earlier
    timestamp, and among equal timestamps the first one seen wins.
    Returns None for an empty series.
    """
    ordered = SortedKeyList(series, key=_by_timestamp)
    if not ordered:
        return None

    # First point at or after the target; its left neighbour is the latest
    # point strictly before it
    idx = ordered.bisect_key_left(target_time)

    candidates: list[PricePoint] = []
    if idx > 0:
        before = ordered[idx - 1]
        # Earliest point sharing the neighbour's timestamp
        candidates.append(ordered[ordered.bisect_key_left(before.timestamp)])
    if idx < len(ordered):
        candidates.append(ordered[idx])

    # min() keeps the first of equal keys, candidates are in time order
    return min(candidates, key=lambda point: abs(point.timestamp - target_time))


def percent_change(start: float, end: float) -> float | None:
    """
    Signed percentage change from start to end.

    None when start is zero, never inf or nan.
    """
    if start == 0:
        return None

    return ((end - start) / start) * 100
