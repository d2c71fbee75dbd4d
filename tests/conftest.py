"""Shared pytest fixtures for all test modules."""

from collections.abc import Callable

import msgspec
import pytest

from betwatch.app import BetWatch
from betwatch.core.config import Settings
from betwatch.exceptions import MalformedPayloadError
from betwatch.markets.protocol import GammaEvent, MarketRef, PricePoint, TrackedItem
from betwatch.markets.types import HistoryWindow
from betwatch.session import Session
from betwatch.store.durable import MemoryBetRepository
from betwatch.store.events import MemoryChangeFeed

NOW = 1_700_000_000.0
LONG_INTERVAL_MS = 60_000


class FakeSnapshotProvider:
    """Snapshot provider serving canned events by slug."""

    def __init__(self) -> None:
        self.events: dict[str, GammaEvent] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []

    async def fetch_snapshot(self, slug: str) -> GammaEvent:
        self.calls.append(slug)

        if slug in self.errors:
            raise self.errors[slug]

        if slug not in self.events:
            raise MalformedPayloadError(f"No event found for slug {slug!r}")

        return self.events[slug]


class FakeHistoryProvider:
    """History provider serving canned series by window interval."""

    def __init__(self) -> None:
        self.series: dict[str, list[PricePoint]] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, HistoryWindow]] = []

    async def fetch_history(
        self, market_id: str, window: HistoryWindow
    ) -> list[PricePoint]:
        self.calls.append((market_id, window))

        if window.interval in self.errors:
            raise self.errors[window.interval]

        return list(self.series.get(window.interval, []))


@pytest.fixture
def now() -> float:
    return NOW


@pytest.fixture
def clock() -> Callable[[], float]:
    return lambda: NOW


# Sample market with YES price 0.62 and YES token 1111
@pytest.fixture
def sample_market_ref() -> MarketRef:
    return MarketRef(
        outcome_prices='["0.62", "0.38"]',
        clob_token_ids='["1111", "2222"]',
    )


@pytest.fixture
def sample_event_json() -> bytes:
    return (
        b'[{"id": "16085", "title": "Fed decision in December?",'
        b' "image": "https://example.com/fed.png",'
        b' "slug": "fed-decision-in-december", "liquidity": "125000.5",'
        b' "active": true,'
        b' "markets": [{"outcomePrices": "[\\"0.62\\", \\"0.38\\"]",'
        b' "clobTokenIds": "[\\"1111\\", \\"2222\\"]", "question": "Cut?"}]}]'
    )


@pytest.fixture
def make_event() -> Callable[..., GammaEvent]:
    def _make_event(
        slug: str = "fed-decision-in-december",
        event_id: str = "16085",
        price: float = 0.62,
        token_id: str | None = "1111",
        liquidity: str | float | None = "125000.5",
    ) -> GammaEvent:
        token_ids = msgspec.json.encode([token_id, "2222"] if token_id else [])
        prices = msgspec.json.encode([str(price), str(round(1 - price, 4))])
        return GammaEvent(
            id=event_id,
            title=f"Event {slug}",
            image=f"https://example.com/{slug}.png",
            slug=slug,
            liquidity=liquidity,
            markets=[
                MarketRef(
                    outcome_prices=prices.decode(),
                    clob_token_ids=token_ids.decode(),
                )
            ],
        )

    return _make_event


@pytest.fixture
def make_item(sample_market_ref: MarketRef) -> Callable[..., TrackedItem]:
    def _make_item(
        item_id: str = "1",
        slug: str | None = None,
        price: float | None = 50.0,
        yes_token_id: str | None = "1111",
    ) -> TrackedItem:
        return TrackedItem(
            id=item_id,
            title=f"Bet {item_id}",
            slug=slug or f"bet-{item_id}",
            current_price=price,
            liquidity=1000.0,
            yes_token_id=yes_token_id,
            markets=(sample_market_ref,),
        )

    return _make_item


@pytest.fixture
def snapshot_provider() -> FakeSnapshotProvider:
    return FakeSnapshotProvider()


@pytest.fixture
def history_provider() -> FakeHistoryProvider:
    return FakeHistoryProvider()


@pytest.fixture
async def make_app(snapshot_provider, history_provider, clock):
    """Factory for BetWatch apps on an in-memory session with fake providers."""
    apps: list[BetWatch] = []

    def _make_app(repository: MemoryBetRepository | None = None) -> BetWatch:
        feed = MemoryChangeFeed()
        session = Session(
            config=Settings(SUPABASE_URL=""),
            snapshots=snapshot_provider,
            history=history_provider,
            repository=(
                repository
                if repository is not None
                else MemoryBetRepository(feed=feed)
            ),
            feed=feed,
        )
        app = BetWatch(
            session=session, refresh_interval_ms=LONG_INTERVAL_MS, clock=clock
        )
        apps.append(app)
        return app

    yield _make_app

    for app in apps:
        if app.is_running:
            await app.stop()
