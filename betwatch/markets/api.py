"""Gamma and CLOB API clients for snapshots and price history."""

import asyncio
from typing import Any

import aiohttp
import structlog

from betwatch.core.logging import Logger
from betwatch.exceptions import MalformedPayloadError, TransientFetchError
from betwatch.markets.parser import decode_events, decode_history
from betwatch.markets.protocol import GammaEvent, PricePoint
from betwatch.markets.types import (
    CLOB_API_BASE_URL,
    GAMMA_API_BASE_URL,
    HistoryWindow,
)

logger: Logger = structlog.get_logger()

# API configuration
MAX_RETRIES = 3
RETRY_DELAY = 1.0


async def _get_bytes(
    session: aiohttp.ClientSession,
    url: str,
    params: dict[str, Any],
    max_retries: int = MAX_RETRIES,
    retry_delay: float = RETRY_DELAY,
) -> bytes:
    """
    GET url with retry logic.

    Client errors (4xx) are not retried.

    Raises:
        TransientFetchError: If every attempt failed
    """
    for attempt in range(max_retries):
        try:
            async with session.get(url, params=params) as response:
                response.raise_for_status()
                return await response.read()

        except aiohttp.ClientResponseError as e:
            if e.status < 500:
                raise TransientFetchError(
                    f"GET {url} rejected with status {e.status}"
                ) from e
            error: Exception = e

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            error = e

        logger.warning(
            f"Request to {url} failed (attempt {attempt + 1}/{max_retries}): {error!r}"
        )
        if attempt < max_retries - 1:
            await asyncio.sleep(retry_delay * (2**attempt))
        else:
            logger.error(f"Request to {url} failed after {max_retries} attempts")
            raise TransientFetchError(f"GET {url} failed: {error!r}") from error

    raise TransientFetchError(f"GET {url} not attempted")  # max_retries < 1


class GammaClient:
    """Snapshot provider backed by the Gamma events endpoint."""

    __slots__ = ("_session", "_base_url", "_max_retries", "_retry_delay")

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str = GAMMA_API_BASE_URL,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
    ) -> None:
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._max_retries = max_retries
        self._retry_delay = retry_delay

    async def fetch_snapshot(self, slug: str) -> GammaEvent:
        """
        Fetch the event for a slug.

        Raises:
            TransientFetchError: On network or HTTP failure
            MalformedPayloadError: If the response holds no event
        """
        data = await _get_bytes(
            self._session,
            f"{self._base_url}/events",
            {"slug": slug},
            max_retries=self._max_retries,
            retry_delay=self._retry_delay,
        )

        events = decode_events(data)
        if not events:
            raise MalformedPayloadError(f"No event found for slug {slug!r}")

        return events[0]


class ClobClient:
    """History provider backed by the CLOB prices-history endpoint."""

    __slots__ = ("_session", "_base_url", "_max_retries", "_retry_delay")

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str = CLOB_API_BASE_URL,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
    ) -> None:
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._max_retries = max_retries
        self._retry_delay = retry_delay

    async def fetch_history(
        self, market_id: str, window: HistoryWindow
    ) -> list[PricePoint]:
        data = await _get_bytes(
            self._session,
            f"{self._base_url}/prices-history",
            {
                "market": market_id,
                "interval": window.interval,
                "fidelity": window.fidelity,
            },
            max_retries=self._max_retries,
            retry_delay=self._retry_delay,
        )

        return decode_history(data)
