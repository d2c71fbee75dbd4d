"""Type definitions for market data providers."""

from typing import NamedTuple, Protocol

from betwatch.markets.protocol import GammaEvent, PricePoint


class HistoryWindow(NamedTuple):
    """Prices-history query window"""

    interval: str
    fidelity: int


class SnapshotProvider(Protocol):
    async def fetch_snapshot(self, slug: str) -> GammaEvent: ...


class HistoryProvider(Protocol):
    async def fetch_history(
        self, market_id: str, window: HistoryWindow
    ) -> list[PricePoint]: ...


# Configuration constants
ONE_HOUR_WINDOW = HistoryWindow(interval="1h", fidelity=1)
ONE_DAY_WINDOW = HistoryWindow(interval="1d", fidelity=1)
ONE_WEEK_WINDOW = HistoryWindow(interval="1w", fidelity=5)
ONE_HOUR_SECONDS = 3600
GAMMA_API_BASE_URL = "https://gamma-api.polymarket.com"
CLOB_API_BASE_URL = "https://clob.polymarket.com"
