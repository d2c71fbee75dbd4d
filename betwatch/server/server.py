from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import msgspec
import structlog
from aiohttp import web
from aiohttp.hdrs import CONTENT_TYPE
from prometheus_client import CONTENT_TYPE_LATEST

from betwatch.core.logging import Logger
from betwatch.exceptions import (
    MalformedPayloadError,
    PersistenceError,
    TransientFetchError,
    ValidationError,
)

if TYPE_CHECKING:
    from betwatch.app import BetWatch
    from betwatch.store.reconciliation import ReconciliationStore

logger: Logger = structlog.getLogger(__name__)

SSE_RETRY_MS = 3000


class AddBetRequest(msgspec.Struct):
    url: str


class RefreshIntervalRequest(msgspec.Struct):
    interval_ms: int


_add_bet_decoder = msgspec.json.Decoder(AddBetRequest)
_interval_decoder = msgspec.json.Decoder(RefreshIntervalRequest)


def msgspec_response(data: Any, status: int = 200) -> web.Response:
    return web.Response(
        body=msgspec.json.encode(data),
        status=status,
        content_type="application/json",
    )


def error_response(message: str, status: int) -> web.Response:
    return msgspec_response({"error": message}, status=status)


def projection_payload(store: ReconciliationStore) -> dict[str, Any]:
    """Projection with cached change sets, in store order."""
    return {
        "version": store.version,
        "bets": [
            {"bet": item, "changes": store.change_set(item.id)}
            for item in store.projection()
        ],
    }


class HTTPServer:
    """
    HTTP server exposing the bet API, an SSE projection stream and
    health/stats/metrics endpoints.

    Follows the async component lifecycle used by the scheduler and the
    change-stream consumer.
    """

    __slots__ = (
        "_app",
        "_port",
        "_host",
        "_runner",
        "_site",
        "_running",
        "_streams",
        "_closing",
    )

    def __init__(
        self,
        app: "BetWatch",
        port: int = 8080,
        host: str = "0.0.0.0",
    ) -> None:
        """Initialize HTTP server.

        Args:
            app: BetWatch application instance serving the requests
            port: Port to bind to (default: 8080)
            host: Host to bind to (default: 0.0.0.0 for container compatibility)
        """
        self._app = app
        self._port = port
        self._host = host
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._running = False
        self._streams: set[asyncio.Event] = set()
        self._closing = False

    def build_app(self) -> web.Application:
        """aiohttp application with every route registered."""
        web_app = web.Application()
        web_app.router.add_get("/health", self._handle_health)
        web_app.router.add_get("/stats", self._handle_stats)
        web_app.router.add_get("/metrics", self._handle_metrics)
        web_app.router.add_get("/bets", self._handle_list_bets)
        web_app.router.add_post("/bets", self._handle_add_bet)
        web_app.router.add_get("/bets/stream", self._handle_stream)
        web_app.router.add_delete("/bets/{bet_id}", self._handle_remove_bet)
        web_app.router.add_get("/bets/{bet_id}/changes", self._handle_changes)
        web_app.router.add_put("/refresh-interval", self._handle_refresh_interval)
        web_app.router.add_post("/refresh", self._handle_refresh)
        web_app.on_shutdown.append(self._close_streams)
        return web_app

    async def start(self) -> None:
        """Start HTTP server.

        Raises:
            Exception: If server fails to start (port conflict, etc.)
        """
        if self._running:
            logger.warning("HTTP server already running")
            return

        logger.info(f"Starting HTTP server on {self._host}:{self._port}")

        self._closing = False
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        self._site = web.TCPSite(
            self._runner,
            self._host,
            self._port,
        )
        await self._site.start()

        self._running = True
        logger.info(f"✓ HTTP server started on {self._host}:{self._port}")

    async def stop(self) -> None:
        """Stop HTTP server gracefully."""
        if not self._running:
            logger.warning("HTTP server not running")
            return

        logger.info("Stopping HTTP server...")

        self._running = False

        if self._site:
            await self._site.stop()
            self._site = None

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        logger.info("✓ HTTP server stopped")

    async def _close_streams(self, web_app: web.Application) -> None:
        """Wake open SSE streams so their handlers finish before shutdown."""
        self._closing = True
        for wakeup in list(self._streams):
            wakeup.set()

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /health endpoint.

        Returns:
            200 OK with health status and component breakdown when healthy
            503 Service Unavailable when unhealthy
        """
        logger.debug("GET /health")

        is_healthy = self._app.is_healthy()

        components = {
            "session": bool(self._app._session.is_open),
            "scheduler": bool(
                self._app._scheduler is not None and self._app._scheduler.is_active
            ),
            "stream": bool(
                self._app._consumer is not None and self._app._consumer.is_running
            ),
        }

        response_data = {
            "healthy": is_healthy,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": components,
        }

        status = 200 if is_healthy else 503
        return web.json_response(response_data, status=status)

    async def _handle_stats(self, request: web.Request) -> web.Response:
        logger.debug("GET /stats")

        return msgspec_response(self._app.get_stats())

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        """Handle GET /metrics endpoint.

        Returns:
            200 OK with Prometheus text exposition format
        """
        try:
            # Import here to avoid circular dependency
            from betwatch.metrics.prometheus import MetricsCollector

            collector = MetricsCollector(self._app)
            metrics_bytes = collector.collect_metrics()

        except Exception as e:
            logger.exception(f"Error getting metrics: {e}")
            return error_response(str(e), status=500)

        return web.Response(
            body=metrics_bytes,
            headers={CONTENT_TYPE: CONTENT_TYPE_LATEST},
        )

    async def _handle_list_bets(self, request: web.Request) -> web.Response:
        logger.debug("GET /bets")

        return msgspec_response(projection_payload(self._app.store))

    async def _handle_add_bet(self, request: web.Request) -> web.Response:
        """Handle POST /bets with body {"url": ...}.

        Returns:
            201 Created with the tracked bet
            400 Bad Request for an unusable body or market reference
            502 Bad Gateway when the market lookup fails
            503 Service Unavailable when the durable write fails
        """
        try:
            body = _add_bet_decoder.decode(await request.read())
        except (msgspec.DecodeError, msgspec.ValidationError) as e:
            return error_response(f"Invalid request body: {e}", status=400)

        logger.debug(f"POST /bets {body.url}")

        try:
            item = await self._app.add_bet(body.url)
        except ValidationError as e:
            return error_response(str(e), status=400)
        except (TransientFetchError, MalformedPayloadError) as e:
            return error_response(str(e), status=502)
        except PersistenceError as e:
            return error_response(str(e), status=503)

        return msgspec_response({"bet": item}, status=201)

    async def _handle_remove_bet(self, request: web.Request) -> web.Response:
        bet_id = request.match_info["bet_id"]

        logger.debug(f"DELETE /bets/{bet_id}")

        try:
            removed = await self._app.remove_bet(bet_id)
        except PersistenceError as e:
            return error_response(str(e), status=503)

        return msgspec_response({"id": bet_id, "removed": removed})

    async def _handle_changes(self, request: web.Request) -> web.Response:
        """Handle GET /bets/{bet_id}/changes.

        Computes the change set on demand from the bet's YES token.

        Returns:
            200 OK with the change set
            404 Not Found if the bet is not tracked
        """
        bet_id = request.match_info["bet_id"]

        logger.debug(f"GET /bets/{bet_id}/changes")

        item = self._app.store.get(bet_id)
        if item is None:
            return error_response(f"Bet {bet_id} not found", status=404)

        if not item.yes_token_id:
            changes = self._app.store.change_set(bet_id)
            return msgspec_response({"id": bet_id, "changes": changes})

        changes = await self._app.get_change_set(item.yes_token_id)
        return msgspec_response({"id": bet_id, "changes": changes})

    async def _handle_refresh_interval(self, request: web.Request) -> web.Response:
        try:
            body = _interval_decoder.decode(await request.read())
            self._app.set_refresh_interval(body.interval_ms)
        except (msgspec.DecodeError, msgspec.ValidationError, ValueError) as e:
            return error_response(f"Invalid interval: {e}", status=400)

        logger.info(f"Refresh interval set to {body.interval_ms}ms")

        return msgspec_response({"interval_ms": body.interval_ms})

    async def _handle_refresh(self, request: web.Request) -> web.Response:
        logger.debug("POST /refresh")

        triggered = self._app.refresh_now()
        return msgspec_response({"triggered": triggered}, status=202)

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        """Handle GET /bets/stream.

        Sends the projection on connect and again after every store change.
        Changes arriving while a write is in progress are collapsed into one
        event.
        """
        logger.debug("GET /bets/stream")

        store = self._app.store
        wakeup = asyncio.Event()

        response = web.StreamResponse(
            headers={
                CONTENT_TYPE: "text/event-stream",
                "Cache-Control": "no-cache",
            }
        )
        await response.prepare(request)
        await response.write(f"retry: {SSE_RETRY_MS}\n\n".encode())

        unsubscribe = store.subscribe(lambda _: wakeup.set())
        self._streams.add(wakeup)

        try:
            while True:
                wakeup.clear()
                data = msgspec.json.encode(projection_payload(store))
                await response.write(b"event: projection\ndata: " + data + b"\n\n")

                await wakeup.wait()
                if self._closing:
                    break

        except ConnectionResetError:
            logger.debug("SSE client disconnected")

        finally:
            unsubscribe()
            self._streams.discard(wakeup)

        return response
