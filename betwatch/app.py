import asyncio
import signal
import time
from collections.abc import Callable
from typing import Any, NamedTuple

import structlog

from betwatch.analysis.changes import ChangeCalculator
from betwatch.core.config import settings
from betwatch.core.logging import Logger
from betwatch.exceptions import PersistenceError
from betwatch.markets.parser import extract_slug, item_from_event
from betwatch.markets.protocol import PriceChangeSet, TrackedItem
from betwatch.refresh.scheduler import PollScheduler, validate_interval
from betwatch.refresh.snapshot import SnapshotRefresher
from betwatch.server import HTTPServer
from betwatch.session import Session
from betwatch.store.reconciliation import ReconciliationStore
from betwatch.store.stream import ChangeStreamConsumer

logger: Logger = structlog.getLogger(__name__)


class PollResult(NamedTuple):
    """Outcome of one poll cycle"""

    items: list[TrackedItem]
    changes: dict[str, PriceChangeSet]
    since_version: int  # store version when the cycle started


class BetWatch:
    """
    Main application orchestrator.

    Owns the session, the reconciliation store and both producer tasks
    (poll scheduler and change-stream consumer), and exposes the upward
    interface used by the HTTP server.
    """

    __slots__ = (
        "_session",
        "_store",
        "_refresher",
        "_calculator",
        "_scheduler",
        "_consumer",
        "_refresh_interval_ms",
        "_clock",
        "_running",
        "_shutdown_event",
        "_http_server",
        "_enable_http",
        "_http_port",
    )

    def __init__(
        self,
        session: Session | None = None,
        refresh_interval_ms: int = settings.REFRESH_INTERVAL_MS,
        enable_http: bool = False,
        http_port: int = settings.HTTP_PORT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialise application

        Args:
            session: Session to run on (default = Session from settings)
            refresh_interval_ms: Poll interval in milliseconds
            enable_http: Whether to start HTTP server (default = False)
            http_port: Port for HTTP server
            clock: Epoch-seconds clock shared by refresher and calculator
        """
        if refresh_interval_ms <= 0:
            raise ValueError("refresh_interval_ms must be positive")

        self._session = session or Session()
        self._refresh_interval_ms = refresh_interval_ms
        self._clock = clock

        # Components (initialised on start)
        self._store = ReconciliationStore()
        self._refresher: SnapshotRefresher | None = None
        self._calculator: ChangeCalculator | None = None
        self._scheduler: PollScheduler[PollResult] | None = None
        self._consumer: ChangeStreamConsumer | None = None

        # HTTP server configuration
        self._enable_http = enable_http
        self._http_port = http_port
        self._http_server: HTTPServer | None = None

        self._running = False
        self._shutdown_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        "Whether the application is currently running"
        return self._running

    @property
    def store(self) -> ReconciliationStore:
        return self._store

    @property
    def refresh_interval_ms(self) -> int:
        return self._refresh_interval_ms

    async def start(self) -> None:
        """
        Start all components in order.

        Stops already-started components and re-raises if any step fails.
        """
        if self._running:
            logger.warning("Application already running")
            return

        logger.info("Starting betwatch...")

        try:
            # 1. Session
            await self._session.open()
            logger.info("✓ Session opened")

            # 2. Refresher and calculator
            self._refresher = SnapshotRefresher(
                self._session.snapshots, clock=self._clock
            )
            self._calculator = ChangeCalculator(
                self._session.history, clock=self._clock
            )
            logger.info("✓ SnapshotRefresher and ChangeCalculator initialised")

            # 3. Initial load
            try:
                await self.reload()
            except PersistenceError as e:
                logger.warning(f"Initial load failed, starting empty: {e}")
            logger.info(f"✓ Store loaded with {len(self._store)} bets")

            # 4. Change stream
            self._consumer = ChangeStreamConsumer(
                store=self._store,
                subscription=self._session.subscribe(),
            )
            self._consumer.start()
            logger.info("✓ ChangeStreamConsumer started")

            # 5. Poll scheduler
            self._scheduler = PollScheduler(
                cycle=self._poll_cycle,
                on_result=self._apply_poll_result,
                interval_ms=self._refresh_interval_ms,
                name="bets",
            )
            self._scheduler.start()
            logger.info(
                f"✓ PollScheduler started every {self._refresh_interval_ms}ms"
            )

            # 6. HTTP Server (if enabled)
            if self._enable_http:
                self._http_server = HTTPServer(app=self, port=self._http_port)
                try:
                    await self._http_server.start()
                except Exception as e:
                    logger.error(f"Failed to start HTTP server: {e}")
                    # Don't fail startup if HTTP server fails
                    self._http_server = None

            self._running = True
            logger.info("✓ betwatch started successfully!")

        except Exception as e:
            logger.error(f"X Application startup failed: {e}")
            await self._cleanup_on_startup_failure()
            raise

    async def stop(self) -> None:
        if not self._running:
            logger.warning("Application not running")
            return

        logger.info("Stopping application...")
        start_time = asyncio.get_running_loop().time()

        await self._stop()

        self._running = False

        elapsed_time = asyncio.get_running_loop().time() - start_time

        logger.info(f"Application stopped - shutdown took {elapsed_time:.1f}s")

    async def _stop(self) -> None:
        # Stop in reverse order
        if self._http_server:
            try:
                await self._http_server.stop()
            except Exception as e:
                logger.error(f"Error stopping HTTP server: {e}")
            self._http_server = None

        if self._scheduler:
            try:
                await self._scheduler.stop()
            except Exception as e:
                logger.error(f"Error stopping scheduler: {e}")

        if self._consumer:
            try:
                await self._consumer.stop()
            except Exception as e:
                logger.error(f"Error stopping change stream: {e}")

        try:
            await self._session.close()
        except Exception as e:
            logger.error(f"Error closing session: {e}")

        logger.warning("Cleanup completed")

    async def _cleanup_on_startup_failure(self) -> None:
        logger.warning("Cleaning up after startup failure...")

        await self._stop()

    async def run(self) -> None:
        """
        Run application with automatic signal handling.

        Blocks until SIGINT or SIGTERM received, then gracefully stops.
        """
        loop = asyncio.get_running_loop()

        def signal_handler(*args, **kwargs) -> None:
            logger.info("Shutdown signal received")
            self._shutdown_event.set()

        signals = (signal.SIGINT, signal.SIGTERM)
        for sig in signals:
            loop.add_signal_handler(sig, signal_handler)

        try:
            await self.start()

            await self._shutdown_event.wait()
        finally:
            await self.stop()

            for sig in signals:
                try:
                    loop.remove_signal_handler(sig)
                except Exception:
                    pass

    # -------------------------------
    # Upward interface
    # -------------------------------

    def get_projection(self) -> tuple[TrackedItem, ...]:
        return self._store.projection()

    async def add_bet(self, reference: str) -> TrackedItem:
        """
        Track the market behind a URL or slug.

        Raises:
            ValidationError: Invalid reference or no YES token, before any mutation
            TransientFetchError: Snapshot lookup failed
            MalformedPayloadError: Snapshot payload unusable
            PersistenceError: Durable write failed, optimistic insert rolled back
        """
        slug = extract_slug(reference)

        event = await self._session.snapshots.fetch_snapshot(slug)
        item = item_from_event(event, self._clock())

        command = self._store.optimistic_insert(item)

        try:
            await self._session.repository.upsert(item)
        except Exception as e:
            command.rollback()
            logger.error(f"Adding bet {item.id} failed, rolled back: {e}")
            if isinstance(e, PersistenceError):
                raise
            raise PersistenceError(f"Adding bet {item.id} failed: {e}") from e

        command.confirm()
        logger.info(f"Bet added: {item.id} ({item.slug})")

        return item

    async def remove_bet(self, item_id: str) -> bool:
        """
        Stop tracking a bet.

        Returns False when the id is not tracked.

        Raises:
            PersistenceError: Durable delete failed, optimistic removal rolled back
        """
        command = self._store.optimistic_remove(item_id)
        if command is None:
            logger.debug(f"Remove of unknown bet {item_id}, no-op")
            return False

        try:
            await self._session.repository.delete(item_id)
        except Exception as e:
            command.rollback()
            logger.error(f"Removing bet {item_id} failed, rolled back: {e}")
            if isinstance(e, PersistenceError):
                raise
            raise PersistenceError(f"Removing bet {item_id} failed: {e}") from e

        command.confirm()
        logger.info(f"Bet removed: {item_id}")

        return True

    def set_refresh_interval(self, interval_ms: int) -> None:
        """Change the poll interval; in-flight cycle results are discarded."""
        if self._scheduler is not None:
            self._scheduler.set_interval(interval_ms)
        else:
            validate_interval(interval_ms)

        self._refresh_interval_ms = interval_ms

    def refresh_now(self) -> bool:
        """Request an immediate, coalesced refresh cycle."""
        if self._scheduler is None:
            return False

        return self._scheduler.trigger()

    async def get_change_set(self, market_id: str) -> PriceChangeSet:
        """Compute changes for a market token on demand."""
        if self._calculator is None:
            raise RuntimeError("Application not started")

        return await self._calculator.compute_changes(market_id)

    async def reload(self) -> None:
        """Replace the projection with the durable listing."""
        since_version = self._store.version
        items = await self._session.repository.list()
        self._store.load(items, since_version=since_version)

    # -------------------------------
    # Poll cycle
    # -------------------------------

    async def _poll_cycle(self) -> PollResult:
        if self._refresher is None or self._calculator is None:
            raise RuntimeError("Application not started")

        since_version = self._store.version

        try:
            items = await self._session.repository.list()
        except PersistenceError as e:
            logger.warning(f"Durable listing failed, refreshing projection: {e}")
            items = list(self._store.projection())

        refreshed, changes = await asyncio.gather(
            self._refresher.refresh_all(items),
            self._calculator.compute_many(items),
        )

        return PollResult(
            items=refreshed, changes=changes, since_version=since_version
        )

    def _apply_poll_result(self, result: PollResult) -> None:
        self._store.load(result.items, since_version=result.since_version)
        self._store.apply_change_sets(result.changes)

        logger.debug(f"Poll cycle applied: {len(result.items)} bets")

    # -------------------------------
    # Stats
    # -------------------------------

    def get_stats(self) -> dict[str, Any]:
        """
        Get comprehensive application statistics.

        Returns:
            dict with keys: running, store, scheduler, refresher, stream
        """
        stats: dict[str, Any] = {
            "running": self._running,
            "store": {
                "tracked_bets": len(self._store),
                "pending_mutations": self._store.pending_count,
                "version": self._store.version,
            },
            "scheduler": {},
            "refresher": {},
            "stream": {},
        }

        if self._scheduler:
            scheduler_stats = self._scheduler.stats
            stats["scheduler"] = {
                "active": self._scheduler.is_active,
                "generation": self._scheduler.generation,
                "interval_ms": self._scheduler.interval_ms,
                "ticks": scheduler_stats.ticks,
                "ticks_coalesced": scheduler_stats.ticks_coalesced,
                "cycles_started": scheduler_stats.cycles_started,
                "cycles_completed": scheduler_stats.cycles_completed,
                "cycles_discarded": scheduler_stats.cycles_discarded,
                "cycles_failed": scheduler_stats.cycles_failed,
                "avg_cycle_seconds": scheduler_stats.avg_cycle_seconds,
            }

        if self._refresher:
            refresh_stats = self._refresher.stats
            stats["refresher"] = {
                "refreshed": refresh_stats.refreshed,
                "failed": refresh_stats.failed,
                "failure_rate": refresh_stats.failure_rate,
            }

        if self._consumer:
            stream_stats = self._consumer.stats
            stats["stream"] = {
                "running": self._consumer.is_running,
                "events_received": stream_stats.events_received,
                "inserts_applied": stream_stats.inserts_applied,
                "removes_applied": stream_stats.removes_applied,
                "duplicates_ignored": stream_stats.duplicates_ignored,
                "events_ignored": stream_stats.events_ignored,
                "events_failed": stream_stats.events_failed,
            }

        return stats

    def is_healthy(self) -> bool:
        if not self._running:
            return False

        if self._scheduler and not self._scheduler.is_active:
            logger.warning("Health check failed: scheduler idle")
            return False

        if self._consumer and not self._consumer.is_running:
            logger.warning("Health check failed: change stream stopped")
            return False

        return True
