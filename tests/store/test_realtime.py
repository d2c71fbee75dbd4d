"""Tests for the Supabase Realtime change feed."""

import asyncio
from unittest.mock import AsyncMock, patch

import msgspec
import pytest

from betwatch.exceptions import SubscriptionError
from betwatch.store.events import ChangeOp
from betwatch.store.realtime import (
    PhoenixMessage,
    RealtimeSubscription,
    SupabaseChangeFeed,
    parse_change,
    realtime_url,
)

TOPIC = "realtime:public:bets"


def phoenix(event: str, payload: dict, ref: str | None = None, topic: str = TOPIC):
    return msgspec.json.encode(
        PhoenixMessage(topic=topic, event=event, payload=payload, ref=ref)
    )


def change(change_type: str, record=None, old_record=None) -> bytes:
    return phoenix(
        "postgres_changes",
        {
            "data": {
                "type": change_type,
                "table": "bets",
                "record": record,
                "old_record": old_record,
            }
        },
    )


@pytest.fixture
def mock_ws():
    ws = AsyncMock()
    ws.send = AsyncMock()
    ws.recv = AsyncMock()
    ws.close = AsyncMock()
    return ws


class TestRealtimeUrl:
    """Test realtime_url."""

    def test_https_becomes_wss(self):
        url = realtime_url("https://abc.supabase.co/", "key")

        assert url == (
            "wss://abc.supabase.co/realtime/v1/websocket?apikey=key&vsn=1.0.0"
        )

    def test_http_becomes_ws(self):
        assert realtime_url("http://localhost:54321", "k").startswith(
            "ws://localhost:54321/realtime/v1/websocket?"
        )


class TestParseChange:
    """Test parse_change."""

    def test_insert_uses_record(self):
        message = msgspec.json.decode(
            change("INSERT", record={"id": "1", "title": "t"}), type=PhoenixMessage
        )

        event = parse_change(message)

        assert event.op == ChangeOp.INSERT
        assert event.table == "bets"
        assert event.record == {"id": "1", "title": "t"}

    def test_delete_uses_old_record(self):
        message = msgspec.json.decode(
            change("DELETE", old_record={"id": "1"}), type=PhoenixMessage
        )

        event = parse_change(message)

        assert event.op == ChangeOp.DELETE
        assert event.record_id == "1"

    def test_unknown_type(self):
        message = msgspec.json.decode(change("TRUNCATE"), type=PhoenixMessage)

        assert parse_change(message).op == ChangeOp.UNKNOWN

    def test_non_change_messages(self):
        reply = PhoenixMessage(topic=TOPIC, event="phx_reply", payload={})
        no_data = PhoenixMessage(topic=TOPIC, event="postgres_changes", payload={})

        assert parse_change(reply) is None
        assert parse_change(no_data) is None


class TestRealtimeSubscription:
    """Test channel join and message handling with a mocked websocket."""

    @pytest.mark.asyncio
    async def test_join_sends_config_and_waits_for_reply(self, mock_ws):
        # Arrange
        subscription = RealtimeSubscription("wss://test", "key", "bets")
        mock_ws.recv.side_effect = [
            phoenix("presence_state", {}),
            phoenix("phx_reply", {"status": "ok", "response": {}}, ref="1"),
        ]

        # Act
        await subscription._join(mock_ws)

        # Assert
        sent = msgspec.json.decode(mock_ws.send.call_args.args[0], type=PhoenixMessage)
        assert sent.topic == TOPIC
        assert sent.event == "phx_join"
        assert sent.ref == "1"
        assert sent.payload["access_token"] == "key"
        assert sent.payload["config"]["postgres_changes"] == [
            {"event": "*", "schema": "public", "table": "bets"}
        ]

    @pytest.mark.asyncio
    async def test_rejected_join(self, mock_ws):
        subscription = RealtimeSubscription("wss://test", "key", "bets")
        mock_ws.recv.side_effect = [
            phoenix("phx_reply", {"status": "error", "response": "denied"}, ref="1"),
        ]

        with pytest.raises(SubscriptionError):
            await subscription._join(mock_ws)

    @pytest.mark.asyncio
    async def test_receive_queues_changes_until_channel_closed(self, mock_ws):
        # Arrange
        subscription = RealtimeSubscription("wss://test", "key", "bets")
        mock_ws.recv.side_effect = [
            change("INSERT", record={"id": "1"}),
            b"not json",
            phoenix("phx_reply", {"status": "ok"}, ref="2"),
            change("DELETE", old_record={"id": "1"}),
            phoenix("phx_close", {}),
        ]

        # Act
        with pytest.raises(SubscriptionError):
            await subscription._receive_messages(mock_ws)
        await subscription.close()
        events = [event async for event in subscription]

        # Assert
        assert [(event.op, event.record_id) for event in events] == [
            (ChangeOp.INSERT, "1"),
            (ChangeOp.DELETE, "1"),
        ]

    @pytest.mark.asyncio
    async def test_connection_loop_reconnects_with_backoff(self):
        # Arrange
        subscription = RealtimeSubscription("wss://test", "key", "bets")
        attempts = 0

        async def failing_connect() -> None:
            nonlocal attempts
            attempts += 1
            if attempts >= 3:
                subscription._stop_event.set()
            raise OSError("connection refused")

        # Act
        with (
            patch.object(
                RealtimeSubscription,
                "_connect_and_run",
                side_effect=failing_connect,
            ),
        ):
            subscription._reconnect_delay = 0.001
            await asyncio.wait_for(subscription._connection_loop(), timeout=2)

        # Assert
        assert attempts == 3
        assert subscription.reconnect_count == 2
        assert not subscription.is_joined


class TestSupabaseChangeFeed:
    """Test SupabaseChangeFeed subscription management."""

    @pytest.mark.asyncio
    async def test_subscribe_starts_and_close_removes(self):
        feed = SupabaseChangeFeed("https://abc.supabase.co", "key")

        with patch.object(RealtimeSubscription, "start") as mock_start:
            subscription = feed.subscribe("bets")

        mock_start.assert_called_once()
        assert subscription.topic == TOPIC

        await feed.close()

        assert subscription.is_closed
        assert feed._subscriptions == []
