"""Snapshot refresh of tracked items against the snapshot provider."""

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import structlog

from betwatch.core.logging import Logger
from betwatch.markets.parser import apply_snapshot
from betwatch.markets.protocol import TrackedItem
from betwatch.markets.types import SnapshotProvider

logger: Logger = structlog.get_logger()


@dataclass(slots=True)
class RefreshStats:
    """Snapshot refresh outcomes."""

    refreshed: int = 0
    failed: int = 0

    @property
    def failure_rate(self) -> float:
        """
        Fraction of failed lookups.

        Returns 0.0 when nothing was attempted.
        """
        attempted = self.refreshed + self.failed
        if attempted > 0:
            return self.failed / attempted
        return 0.0


class SnapshotRefresher:
    """
    Refreshes price, liquidity and markets of tracked items.

    A failed lookup never raises: the original item is returned and the
    failure is logged, so one bad slug cannot abort a batch.
    """

    __slots__ = ("_provider", "_clock", "_stats")

    def __init__(
        self,
        provider: SnapshotProvider,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._provider = provider
        self._clock = clock
        self._stats = RefreshStats()

    @property
    def stats(self) -> RefreshStats:
        """Read-only access to refresh statistics."""
        return self._stats

    async def refresh_one(self, item: TrackedItem) -> TrackedItem:
        try:
            event = await self._provider.fetch_snapshot(item.slug)
            refreshed = apply_snapshot(item, event, self._clock())
        except Exception as e:
            self._stats.failed += 1
            logger.warning(f"Error refreshing bet {item.slug}: {e}")
            return item

        self._stats.refreshed += 1
        return refreshed

    async def refresh_all(self, items: Sequence[TrackedItem]) -> list[TrackedItem]:
        """Refresh concurrently, preserving length and order."""
        if not items:
            return []

        return list(await asyncio.gather(*(self.refresh_one(item) for item in items)))
