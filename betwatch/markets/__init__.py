"""Market data: payload types, parsing and provider clients."""

from betwatch.markets.api import ClobClient, GammaClient
from betwatch.markets.protocol import (
    MarketRef,
    PriceChangeSet,
    PricePoint,
    TrackedItem,
)
from betwatch.markets.types import (
    ONE_DAY_WINDOW,
    ONE_HOUR_WINDOW,
    ONE_WEEK_WINDOW,
    HistoryProvider,
    HistoryWindow,
    SnapshotProvider,
)

__all__ = [
    "ClobClient",
    "GammaClient",
    "MarketRef",
    "PriceChangeSet",
    "PricePoint",
    "TrackedItem",
    "HistoryProvider",
    "HistoryWindow",
    "SnapshotProvider",
    "ONE_HOUR_WINDOW",
    "ONE_DAY_WINDOW",
    "ONE_WEEK_WINDOW",
]
