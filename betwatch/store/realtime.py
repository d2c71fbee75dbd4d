"""Supabase Realtime change feed over a Phoenix-channel websocket."""

import asyncio
import itertools
from typing import Any
from urllib.parse import urlencode

import msgspec
import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosedOK

from betwatch.core.logging import Logger
from betwatch.exceptions import SubscriptionError
from betwatch.store.events import (
    CHANGE_OP_MAP,
    ChangeEvent,
    ChangeOp,
    QueueSubscription,
)

INITIAL_RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 30.0
HEARTBEAT_INTERVAL = 30.0
JOIN_TIMEOUT = 10.0
PHOENIX_VERSION = "1.0.0"
DEFAULT_SCHEMA = "public"

logger: Logger = structlog.get_logger()


class PhoenixMessage(msgspec.Struct):
    topic: str
    event: str
    payload: dict[str, Any] = msgspec.field(default_factory=dict)
    ref: str | None = None


class PostgresChange(msgspec.Struct):
    type: str
    table: str = ""
    record: dict[str, Any] | None = None
    old_record: dict[str, Any] | None = None


_message_decoder = msgspec.json.Decoder(PhoenixMessage)


def realtime_url(supabase_url: str, api_key: str) -> str:
    """Websocket endpoint for a Supabase project URL."""
    base = supabase_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base.removeprefix("https://")
    elif base.startswith("http://"):
        base = "ws://" + base.removeprefix("http://")

    query = urlencode({"apikey": api_key, "vsn": PHOENIX_VERSION})
    return f"{base}/realtime/v1/websocket?{query}"


def parse_change(message: PhoenixMessage) -> ChangeEvent | None:
    """Extract a ChangeEvent from a postgres_changes message, if any."""
    if message.event != "postgres_changes":
        return None

    data = message.payload.get("data")
    if not isinstance(data, dict):
        return None

    change = msgspec.convert(data, PostgresChange)
    op = CHANGE_OP_MAP.get(change.type, ChangeOp.UNKNOWN)

    if op == ChangeOp.DELETE:
        record = change.old_record or {}
    else:
        record = change.record or {}

    return ChangeEvent(op=op, table=change.table, record=record)


class RealtimeSubscription(QueueSubscription):
    """
    Single managed Realtime channel.

    Lifecycle:
        1. Created by SupabaseChangeFeed.subscribe(table)
        2. start() launches the connection loop
        3. Change events are queued and read by iterating the subscription
        4. close() stops the loop and ends iteration
    """

    __slots__ = (
        "_url",
        "_api_key",
        "_schema",
        "_ws",
        "_refs",
        "_stop_event",
        "_receive_task",
        "_reconnect_delay",
        "reconnect_count",
        "is_joined",
    )

    def __init__(
        self,
        url: str,
        api_key: str,
        table: str,
        schema: str = DEFAULT_SCHEMA,
        on_close=None,
    ) -> None:
        super().__init__(table, on_close=on_close)
        self._url = url
        self._api_key = api_key
        self._schema = schema

        self._ws: ClientConnection | None = None
        self._refs = itertools.count(1)
        self._stop_event = asyncio.Event()
        self._receive_task: asyncio.Task[None] | None = None
        self._reconnect_delay = INITIAL_RECONNECT_DELAY
        self.reconnect_count = 0
        self.is_joined = False

    @property
    def topic(self) -> str:
        return f"realtime:{self._schema}:{self.table}"

    def start(self) -> None:
        if self._receive_task is not None:
            return

        self._receive_task = asyncio.create_task(
            self._connection_loop(),
            name=f"realtime-{self.table}-recv",
        )

    async def close(self) -> None:
        self._stop_event.set()

        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self._ws:
            await self._ws.close()
            self._ws = None

        await super().close()

    async def _connection_loop(self) -> None:
        """Main connection loop with reconnection logic"""
        while not self._stop_event.is_set():
            try:
                await self._connect_and_run()

            except asyncio.CancelledError:
                break

            except Exception as e:
                logger.exception(f"Realtime channel {self.topic} error: {e}")

            self.is_joined = False

            if not self._stop_event.is_set():
                self.reconnect_count += 1

                logger.info(
                    f"Realtime channel {self.topic} reconnecting in "
                    f"{self._reconnect_delay:.1f}s (attempt {self.reconnect_count})"
                )

                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self._reconnect_delay,
                    )
                    break
                except asyncio.TimeoutError:
                    pass

                # Exponential backoff
                self._reconnect_delay = min(
                    self._reconnect_delay * 2, MAX_RECONNECT_DELAY
                )

    async def _connect_and_run(self) -> None:
        async with connect(uri=self._url, ping_interval=None) as ws:
            self._ws = ws
            await self._join(ws)

            self.is_joined = True
            self._reconnect_delay = INITIAL_RECONNECT_DELAY  # Reset backoff
            logger.info(f"Realtime channel {self.topic} joined")

            heartbeat = asyncio.create_task(
                self._heartbeat_loop(ws), name=f"realtime-{self.table}-heartbeat"
            )
            try:
                await self._receive_messages(ws)
            finally:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass
                self._ws = None

    async def _send(
        self, ws: ClientConnection, topic: str, event: str, payload: dict
    ) -> str:
        ref = str(next(self._refs))
        message = PhoenixMessage(topic=topic, event=event, payload=payload, ref=ref)
        await ws.send(msgspec.json.encode(message).decode())
        return ref

    async def _join(self, ws: ClientConnection) -> None:
        """
        Join the channel and wait for its reply.

        Raises:
            SubscriptionError: If the server rejects the join
        """
        payload = {
            "config": {
                "postgres_changes": [
                    {"event": "*", "schema": self._schema, "table": self.table}
                ]
            },
            "access_token": self._api_key,
        }
        ref = await self._send(ws, self.topic, "phx_join", payload)

        async with asyncio.timeout(JOIN_TIMEOUT):
            while True:
                message = _message_decoder.decode(await ws.recv(decode=False))
                if message.event == "phx_reply" and message.ref == ref:
                    break

        if message.payload.get("status") != "ok":
            raise SubscriptionError(
                f"Join of {self.topic} rejected: {message.payload.get('response')}"
            )

    async def _heartbeat_loop(self, ws: ClientConnection) -> None:
        """Background task: keep the Phoenix socket alive."""
        while not self._stop_event.is_set():
            await asyncio.sleep(HEARTBEAT_INTERVAL)
            await self._send(ws, "phoenix", "heartbeat", {})

    async def _receive_messages(self, ws: ClientConnection) -> None:
        try:
            while not self._stop_event.is_set():
                raw = await ws.recv(decode=False)

                try:
                    message = _message_decoder.decode(raw)
                    event = parse_change(message)
                except (msgspec.DecodeError, msgspec.ValidationError) as e:
                    logger.warning(f"Realtime channel {self.topic} bad message: {e}")
                    continue

                if event is None:
                    if message.event in ("phx_error", "phx_close"):
                        raise SubscriptionError(
                            f"Channel {self.topic} closed by server: {message.event}"
                        )
                    continue

                self.put(event)

        except ConnectionClosedOK:
            return


class SupabaseChangeFeed:
    """Change feed opening one Realtime channel per subscription."""

    __slots__ = ("_url", "_api_key", "_subscriptions")

    def __init__(self, supabase_url: str, api_key: str) -> None:
        self._url = realtime_url(supabase_url, api_key)
        self._api_key = api_key
        self._subscriptions: list[RealtimeSubscription] = []

    def subscribe(self, table: str) -> RealtimeSubscription:
        subscription = RealtimeSubscription(
            self._url, self._api_key, table, on_close=self._remove
        )
        self._subscriptions.append(subscription)
        subscription.start()

        return subscription

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.close()

    async def _remove(self, subscription: QueueSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
