"""Price-change calculation over 1h, 1d and 1w history windows."""

import asyncio
import time
from collections.abc import Callable, Sequence

import structlog

from betwatch.analysis.timeseries import nearest_before, percent_change, sort_series
from betwatch.core.logging import Logger
from betwatch.markets.protocol import (
    EMPTY_CHANGES,
    PriceChangeSet,
    PricePoint,
    TrackedItem,
)
from betwatch.markets.types import (
    ONE_DAY_WINDOW,
    ONE_HOUR_SECONDS,
    ONE_HOUR_WINDOW,
    ONE_WEEK_WINDOW,
    HistoryProvider,
    HistoryWindow,
)

logger: Logger = structlog.get_logger()


def hourly_change(series: Sequence[PricePoint], now: float) -> float | None:
    """
    Change of the latest hourly point against the point nearest one hour ago.

    Falls back to the oldest point when no nearest match exists. A single
    point is both reference and current, giving 0.0.
    """
    if not series:
        return None

    ordered = sort_series(series, descending=True)
    current = ordered[0]

    reference = nearest_before(ordered, now - ONE_HOUR_SECONDS)
    if reference is None:
        reference = ordered[-1]

    return percent_change(reference.price, current.price)


def window_change(series: Sequence[PricePoint]) -> float | None:
    """
    First-versus-last change over a sparse window.

    Uses the provider's order as returned: first element is the reference,
    last element is the freshest available value.
    """
    if len(series) < 2:
        return None

    return percent_change(series[0].price, series[-1].price)


class ChangeCalculator:
    """
    Computes PriceChangeSets from three concurrent history fetches.

    A failed window degrades to None for that window only.
    """

    __slots__ = ("_provider", "_clock")

    def __init__(
        self,
        provider: HistoryProvider,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Args:
            provider: History provider used for all three windows
            clock: Epoch-seconds clock, injectable for tests
        """
        self._provider = provider
        self._clock = clock

    async def compute_changes(self, market_id: str) -> PriceChangeSet:
        hourly, daily, weekly = await asyncio.gather(
            self._fetch_window(market_id, ONE_HOUR_WINDOW),
            self._fetch_window(market_id, ONE_DAY_WINDOW),
            self._fetch_window(market_id, ONE_WEEK_WINDOW),
        )

        changes = PriceChangeSet(
            one_hour=hourly_change(hourly, self._clock()),
            one_day=window_change(daily),
            seven_days=window_change(weekly),
        )

        if not changes.has_data:
            logger.debug(f"No usable price history for {market_id[:16]}...")

        return changes

    async def compute_for(self, item: TrackedItem) -> PriceChangeSet:
        """Changes for a tracked item, empty when it has no YES token."""
        if item.yes_token_id is None:
            return EMPTY_CHANGES

        return await self.compute_changes(item.yes_token_id)

    async def compute_many(
        self, items: Sequence[TrackedItem]
    ) -> dict[str, PriceChangeSet]:
        """Changes keyed by item id, computed concurrently."""
        results = await asyncio.gather(*(self.compute_for(item) for item in items))
        return {item.id: changes for item, changes in zip(items, results)}

    async def _fetch_window(
        self, market_id: str, window: HistoryWindow
    ) -> list[PricePoint]:
        try:
            return await self._provider.fetch_history(market_id, window)
        except Exception as e:
            logger.warning(
                f"History fetch failed for {market_id[:16]}... "
                f"window={window.interval}: {e}"
            )
            return []
