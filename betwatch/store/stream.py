"""Consumer applying pushed change events to the reconciliation store."""

import asyncio
from dataclasses import dataclass

import structlog

from betwatch.core.logging import Logger
from betwatch.exceptions import MalformedPayloadError
from betwatch.markets.parser import item_from_row
from betwatch.store.events import ChangeEvent, ChangeOp, Subscription
from betwatch.store.reconciliation import ReconciliationStore

logger: Logger = structlog.get_logger()


@dataclass(slots=True)
class StreamStats:
    """Change-event consumption counters."""

    events_received: int = 0
    inserts_applied: int = 0
    removes_applied: int = 0
    duplicates_ignored: int = 0
    events_ignored: int = 0
    events_failed: int = 0


class ChangeStreamConsumer:
    """
    Reads a change-event subscription and merges it into the store.

    INSERT and DELETE are applied idempotently; other operations are ignored.
    A bad event is logged and skipped, it never stops the consumer.
    """

    __slots__ = ("_store", "_subscription", "_task", "_stats")

    def __init__(
        self,
        store: ReconciliationStore,
        subscription: Subscription,
    ) -> None:
        self._store = store
        self._subscription = subscription
        self._task: asyncio.Task | None = None
        self._stats = StreamStats()

    @property
    def stats(self) -> StreamStats:
        """Read-only access to consumer statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            logger.warning("ChangeStreamConsumer already running")
            return

        self._task = asyncio.create_task(self._consume(), name="change-stream")

    async def stop(self) -> None:
        """Close the subscription and wait for the consumer to finish."""
        await self._subscription.close()

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def handle(self, event: ChangeEvent) -> bool:
        """
        Apply one event to the store.

        Returns True when the projection changed.
        """
        self._stats.events_received += 1

        match event.op:
            case ChangeOp.INSERT:
                item = item_from_row(event.record)
                if self._store.apply_push_insert(item):
                    self._stats.inserts_applied += 1
                    logger.debug(f"Push insert applied: {item.id}")
                    return True

                self._stats.duplicates_ignored += 1
                return False

            case ChangeOp.DELETE:
                item_id = event.record_id
                if item_id is None:
                    raise MalformedPayloadError("DELETE event without id")

                if self._store.apply_push_remove(item_id):
                    self._stats.removes_applied += 1
                    logger.debug(f"Push remove applied: {item_id}")
                    return True

                self._stats.duplicates_ignored += 1
                return False

            case _:
                self._stats.events_ignored += 1
                return False

    async def _consume(self) -> None:
        """Background task: drain the subscription."""
        try:
            async for event in self._subscription:
                try:
                    self.handle(event)
                except Exception as e:
                    self._stats.events_failed += 1
                    logger.error(f"Change event error: {e}", exc_info=True)

        except asyncio.CancelledError:
            pass

        except Exception as e:
            logger.error(f"Change stream failed: {e}", exc_info=True)

        logger.info("Change stream ended")
