"""Change-event types and the in-memory change feed."""

import asyncio
from enum import IntEnum
from typing import Any, Final, Protocol

import msgspec
import structlog

from betwatch.core.logging import Logger

logger: Logger = structlog.getLogger(__name__)


class ChangeOp(IntEnum):
    """Change operation as integer for fast comparison"""

    INSERT = 0
    DELETE = 1
    UPDATE = 2
    UNKNOWN = 255


CHANGE_OP_MAP: Final[dict[str, ChangeOp]] = {
    "INSERT": ChangeOp.INSERT,
    "DELETE": ChangeOp.DELETE,
    "UPDATE": ChangeOp.UPDATE,
}


class ChangeEvent(msgspec.Struct, frozen=True):
    """
    Row change pushed by the change-event source

    For DELETE the record is the old row, which carries at least the id.
    """

    op: ChangeOp
    table: str
    record: dict[str, Any]

    @property
    def record_id(self) -> str | None:
        record_id = self.record.get("id")
        return None if record_id is None else str(record_id)


class Subscription(Protocol):
    """Async stream of change events for one table"""

    def __aiter__(self) -> "Subscription": ...

    async def __anext__(self) -> ChangeEvent: ...

    async def close(self) -> None: ...


class ChangeFeed(Protocol):
    def subscribe(self, table: str) -> Subscription: ...

    async def close(self) -> None: ...


class QueueSubscription:
    """
    Subscription backed by an asyncio.Queue.

    Iteration ends once close() has been called and queued events drained.
    """

    __slots__ = ("table", "_queue", "_closed", "_on_close")

    def __init__(self, table: str, on_close=None) -> None:
        self.table = table
        self._queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()
        self._closed = False
        self._on_close = on_close

    @property
    def is_closed(self) -> bool:
        return self._closed

    def put(self, event: ChangeEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def __aiter__(self) -> "QueueSubscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration

        return event

    async def close(self) -> None:
        if self._closed:
            return

        self._closed = True
        self._queue.put_nowait(None)

        if self._on_close is not None:
            await self._on_close(self)


class MemoryChangeFeed:
    """In-process change feed, fanning published events out to subscribers."""

    __slots__ = ("_subscriptions",)

    def __init__(self) -> None:
        self._subscriptions: list[QueueSubscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, table: str) -> QueueSubscription:
        subscription = QueueSubscription(table, on_close=self._remove)
        self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: ChangeEvent) -> int:
        """Deliver to matching subscribers. Returns delivery count."""
        delivered = 0
        for subscription in self._subscriptions:
            if subscription.table == event.table:
                subscription.put(event)
                delivered += 1

        return delivered

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.close()

    async def _remove(self, subscription: QueueSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
