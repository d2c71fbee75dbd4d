"""Tests for SupabaseBetRepository against a fake PostgREST app."""

import aiohttp
import msgspec
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from betwatch.exceptions import PersistenceError
from betwatch.markets.parser import item_to_row
from betwatch.store.durable import SupabaseBetRepository

API_KEY = "service-key"


class FakePostgrest:
    """Minimal bets table behind /rest/v1/bets."""

    def __init__(self) -> None:
        self.rows: list[dict] = []
        self.requests: list[tuple[str, dict, dict]] = []
        self.fail_status: int | None = None
        self.list_body: bytes | None = None

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_route("*", "/rest/v1/bets", self.handle)
        return app

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.read()
        self.requests.append(
            (request.method, dict(request.query), dict(request.headers))
        )

        if self.fail_status is not None:
            return web.Response(status=self.fail_status)

        if request.method == "GET":
            if self.list_body is not None:
                return web.Response(
                    body=self.list_body, content_type="application/json"
                )
            return web.json_response(self.rows)

        if request.method == "POST":
            self.rows.extend(msgspec.json.decode(body))
            return web.Response(status=201)

        if request.method == "DELETE":
            item_id = request.query["id"].removeprefix("eq.")
            self.rows = [row for row in self.rows if row["id"] != item_id]
            return web.Response(status=204)

        return web.Response(status=405)


@pytest.fixture
async def postgrest():
    fake = FakePostgrest()
    server = TestServer(fake.app())
    await server.start_server()

    async with aiohttp.ClientSession() as session:
        repository = SupabaseBetRepository(
            session, f"http://{server.host}:{server.port}/", API_KEY
        )
        yield fake, repository

    await server.close()


class TestSupabaseBetRepository:
    """Test list/upsert/delete."""

    @pytest.mark.asyncio
    async def test_list_maps_rows_and_skips_malformed(self, postgrest, make_item):
        # Arrange
        fake, repository = postgrest
        fake.rows = [
            item_to_row(make_item("b")),
            {"title": "no id"},
            item_to_row(make_item("a")),
        ]

        # Act
        items = await repository.list()

        # Assert
        assert [item.id for item in items] == ["b", "a"]
        method, query, headers = fake.requests[0]
        assert method == "GET"
        assert query["order"] == "created_at.desc"
        assert headers["apikey"] == API_KEY
        assert headers["Authorization"] == f"Bearer {API_KEY}"

    @pytest.mark.asyncio
    async def test_upsert_posts_row(self, postgrest, make_item):
        fake, repository = postgrest

        await repository.upsert(make_item("a", price=12.5))

        method, _, headers = fake.requests[0]
        assert method == "POST"
        assert "resolution=merge-duplicates" in headers["Prefer"]
        assert fake.rows[0]["id"] == "a"
        assert fake.rows[0]["current_price"] == 12.5
        assert "created_at" in fake.rows[0]

    @pytest.mark.asyncio
    async def test_delete_filters_by_id(self, postgrest, make_item):
        fake, repository = postgrest
        fake.rows = [item_to_row(make_item("a")), item_to_row(make_item("b"))]

        await repository.delete("a")

        assert fake.requests[0][1] == {"id": "eq.a"}
        assert [row["id"] for row in fake.rows] == ["b"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        argnames="operation", argvalues=["list", "upsert", "delete"]
    )
    async def test_http_failure_raises_persistence_error(
        self, postgrest, make_item, operation
    ):
        fake, repository = postgrest
        fake.fail_status = 500

        with pytest.raises(PersistenceError):
            if operation == "list":
                await repository.list()
            elif operation == "upsert":
                await repository.upsert(make_item("a"))
            else:
                await repository.delete("a")

    @pytest.mark.asyncio
    async def test_bad_listing_payload(self, postgrest):
        fake, repository = postgrest
        fake.list_body = b'{"message": "not a list"}'

        with pytest.raises(PersistenceError):
            await repository.list()
