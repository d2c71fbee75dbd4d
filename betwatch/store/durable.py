"""Durable bet stores: Supabase PostgREST and in-memory."""

from datetime import datetime, timezone
from typing import Any, Protocol

import aiohttp
import msgspec
import structlog

from betwatch.core.logging import Logger
from betwatch.exceptions import MalformedPayloadError, PersistenceError
from betwatch.markets.parser import item_from_row, item_to_row
from betwatch.markets.protocol import TrackedItem
from betwatch.store.events import ChangeEvent, ChangeOp, MemoryChangeFeed

logger: Logger = structlog.getLogger(__name__)

DEFAULT_TABLE = "bets"

_rows_decoder = msgspec.json.Decoder(list[dict[str, Any]])


class BetRepository(Protocol):
    async def list(self) -> list[TrackedItem]: ...

    async def upsert(self, item: TrackedItem) -> None: ...

    async def delete(self, item_id: str) -> None: ...


def _rows_to_items(rows: list[dict[str, Any]]) -> list[TrackedItem]:
    """Map rows, skipping (and logging) the ones that do not decode."""
    items: list[TrackedItem] = []
    for row in rows:
        try:
            items.append(item_from_row(row))
        except MalformedPayloadError as e:
            logger.warning(f"Skipping malformed bet row {row.get('id')}: {e}")

    return items


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseBetRepository:
    """
    Bets table accessed through Supabase's PostgREST endpoint.

    Listing is ordered newest-created first.
    """

    __slots__ = ("_session", "_url", "_headers")

    def __init__(
        self,
        session: aiohttp.ClientSession,
        supabase_url: str,
        api_key: str,
        table: str = DEFAULT_TABLE,
    ) -> None:
        self._session = session
        self._url = f"{supabase_url.rstrip('/')}/rest/v1/{table}"
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
        }

    async def list(self) -> list[TrackedItem]:
        """
        Raises:
            PersistenceError: If the listing request fails
        """
        params = {"select": "*", "order": "created_at.desc"}

        try:
            async with self._session.get(
                self._url, params=params, headers=self._headers
            ) as response:
                response.raise_for_status()
                data = await response.read()

            rows = _rows_decoder.decode(data)

        except (aiohttp.ClientError, TimeoutError) as e:
            raise PersistenceError(f"Listing bets failed: {e!r}") from e
        except (msgspec.DecodeError, msgspec.ValidationError) as e:
            raise PersistenceError(f"Listing bets returned bad payload: {e}") from e

        return _rows_to_items(rows)

    async def upsert(self, item: TrackedItem) -> None:
        row = item_to_row(item, created_at=_utc_now_iso())
        headers = {
            **self._headers,
            "Content-Type": "application/json",
            "Prefer": "resolution=merge-duplicates,return=minimal",
        }

        try:
            async with self._session.post(
                self._url, data=msgspec.json.encode([row]), headers=headers
            ) as response:
                response.raise_for_status()

        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error(f"Error adding bet {item.id}: {e!r}")
            raise PersistenceError(f"Upserting bet {item.id} failed: {e!r}") from e

    async def delete(self, item_id: str) -> None:
        try:
            async with self._session.delete(
                self._url, params={"id": f"eq.{item_id}"}, headers=self._headers
            ) as response:
                response.raise_for_status()

        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error(f"Error removing bet {item_id}: {e!r}")
            raise PersistenceError(f"Deleting bet {item_id} failed: {e!r}") from e


class MemoryBetRepository:
    """
    In-process bets table.

    Publishes INSERT/DELETE events to an optional MemoryChangeFeed, so local
    runs exercise the same push path as the realtime feed.
    """

    __slots__ = ("_rows", "_feed", "_table")

    def __init__(
        self,
        feed: MemoryChangeFeed | None = None,
        table: str = DEFAULT_TABLE,
    ) -> None:
        self._rows: dict[str, dict[str, Any]] = {}  # id -> row, insertion order
        self._feed = feed
        self._table = table

    def __len__(self) -> int:
        return len(self._rows)

    async def list(self) -> list[TrackedItem]:
        # Insertion order is creation order, newest first is its reverse
        return _rows_to_items(list(reversed(self._rows.values())))

    async def upsert(self, item: TrackedItem) -> None:
        existing = self._rows.get(item.id)
        created_at = existing["created_at"] if existing else _utc_now_iso()

        row = item_to_row(item, created_at=created_at)
        self._rows[item.id] = row

        if existing is None:
            self._publish(ChangeOp.INSERT, row)

    async def delete(self, item_id: str) -> None:
        row = self._rows.pop(item_id, None)

        if row is not None:
            self._publish(ChangeOp.DELETE, {"id": item_id})

    def _publish(self, op: ChangeOp, record: dict[str, Any]) -> None:
        if self._feed is not None:
            self._feed.publish(ChangeEvent(op=op, table=self._table, record=record))
