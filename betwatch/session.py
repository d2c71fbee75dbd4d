"""Explicitly opened and closed session owning connections and subscriptions."""

import aiohttp
import structlog

from betwatch.core.config import Settings, settings
from betwatch.core.logging import Logger
from betwatch.markets.api import ClobClient, GammaClient
from betwatch.markets.types import HistoryProvider, SnapshotProvider
from betwatch.store.durable import (
    BetRepository,
    MemoryBetRepository,
    SupabaseBetRepository,
)
from betwatch.store.events import ChangeFeed, MemoryChangeFeed, Subscription
from betwatch.store.realtime import SupabaseChangeFeed

logger: Logger = structlog.get_logger()


class Session:
    """
    Owns the HTTP client session, provider clients, durable store and
    change-event subscriptions.

    Usage:
        async with Session() as session:
            items = await session.repository.list()

    Collaborators passed in are used as-is and not closed by the session,
    except subscriptions opened through subscribe().
    """

    __slots__ = (
        "_config",
        "_http",
        "_owns_http",
        "_snapshots",
        "_history",
        "_repository",
        "_feed",
        "_subscriptions",
        "_injected",
        "_open",
    )

    def __init__(
        self,
        config: Settings = settings,
        http: aiohttp.ClientSession | None = None,
        snapshots: SnapshotProvider | None = None,
        history: HistoryProvider | None = None,
        repository: BetRepository | None = None,
        feed: ChangeFeed | None = None,
    ) -> None:
        self._config = config
        self._http = http
        self._owns_http = http is None
        self._snapshots = snapshots
        self._history = history
        self._repository = repository
        self._feed = feed
        self._subscriptions: list[Subscription] = []
        self._injected = {
            name
            for name, component in (
                ("_snapshots", snapshots),
                ("_history", history),
                ("_repository", repository),
                ("_feed", feed),
            )
            if component is not None
        }
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def http(self) -> aiohttp.ClientSession:
        return self._require(self._http, "http")

    @property
    def snapshots(self) -> SnapshotProvider:
        return self._require(self._snapshots, "snapshots")

    @property
    def history(self) -> HistoryProvider:
        return self._require(self._history, "history")

    @property
    def repository(self) -> BetRepository:
        return self._require(self._repository, "repository")

    @property
    def feed(self) -> ChangeFeed:
        return self._require(self._feed, "feed")

    def _require(self, component, name: str):
        if not self._open or component is None:
            raise RuntimeError(f"Session is not open, cannot access {name}")

        return component

    async def open(self) -> "Session":
        if self._open:
            logger.warning("Session already open")
            return self

        config = self._config

        if self._http is None:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=config.HTTP_TIMEOUT)
            )
            self._owns_http = True

        if self._snapshots is None:
            self._snapshots = GammaClient(self._http, base_url=config.GAMMA_API_URL)

        if self._history is None:
            self._history = ClobClient(self._http, base_url=config.CLOB_API_URL)

        if config.use_supabase:
            if self._feed is None:
                self._feed = SupabaseChangeFeed(
                    config.SUPABASE_URL, config.SUPABASE_KEY
                )
            if self._repository is None:
                self._repository = SupabaseBetRepository(
                    self._http,
                    config.SUPABASE_URL,
                    config.SUPABASE_KEY,
                    table=config.BETS_TABLE,
                )
        else:
            if self._feed is None:
                self._feed = MemoryChangeFeed()
            if self._repository is None:
                feed = self._feed if isinstance(self._feed, MemoryChangeFeed) else None
                self._repository = MemoryBetRepository(
                    feed=feed, table=config.BETS_TABLE
                )

        self._open = True
        backend = "supabase" if config.use_supabase else "in-memory"
        logger.info(f"Session opened ({backend} store)")
        return self

    def subscribe(self, table: str | None = None) -> Subscription:
        """Open a change-event subscription owned by this session."""
        subscription = self.feed.subscribe(table or self._config.BETS_TABLE)
        self._subscriptions.append(subscription)
        return subscription

    async def close(self) -> None:
        if not self._open:
            return

        self._open = False

        for subscription in self._subscriptions:
            try:
                await subscription.close()
            except Exception as e:
                logger.error(f"Error closing subscription: {e}")
        self._subscriptions.clear()

        # Components built by open() are rebuilt on the next open()
        for name in ("_snapshots", "_history", "_repository", "_feed"):
            if name not in self._injected:
                setattr(self, name, None)

        if self._http is not None and self._owns_http:
            await self._http.close()
            self._http = None

        logger.info("Session closed")

    async def __aenter__(self) -> "Session":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
