"""Tests for the PostgREST transport."""
import httpx
import pytest

from database import (
    BackendQuery,
    SupabaseClientFactory,
    SupabaseRestExecutor,
    parse_content_range,
    probe_connection,
)
from utils.connection_pool import ConnectionRole, PooledConnection
from utils.exceptions import (
    BackendAuthError,
    BackendError,
    QueryTimeoutError,
    QueryValidationError,
    TransportError,
)


def connection_for(handler) -> PooledConnection:
    client = httpx.AsyncClient(
        base_url="https://test.supabase.co",
        transport=httpx.MockTransport(handler),
    )
    return PooledConnection(
        id="read-test-1",
        role=ConnectionRole.READ,
        region="default",
        client=client,
        created_at=0.0,
        last_used_at=0.0,
    )


class TestContentRange:

    @pytest.mark.parametrize("header,expected", [
        ("0-24/3573", 3573),
        ("*/0", 0),
        ("0-24/*", None),
        (None, None),
        ("", None),
    ])
    def test_parse(self, header, expected):
        assert parse_content_range(header) == expected


class TestBackendQuery:

    def test_signature_is_stable_across_param_order(self):
        a = BackendQuery(table="robots", params=(("a", "eq.1"), ("b", "eq.2")))
        b = BackendQuery(table="robots", params=(("b", "eq.2"), ("a", "eq.1")))
        assert a.signature() == b.signature()

    def test_signature_differs_by_count(self):
        a = BackendQuery(table="robots")
        b = BackendQuery(table="robots", count=True)
        assert a.signature() != b.signature()

    def test_methods(self):
        assert BackendQuery(table="t").method == "GET"
        assert BackendQuery(table="t", operation="update").method == "PATCH"


class TestSupabaseRestExecutor:

    @pytest.mark.asyncio
    async def test_select_with_count(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(
                200,
                json=[{"id": 1}, {"id": 2}],
                headers={"Content-Range": "0-1/42"},
            )

        query = BackendQuery(
            table="robots",
            params=(("select", "*"), ("order", "created_at.desc"), ("limit", "2")),
            count=True,
        )
        result = await SupabaseRestExecutor()(connection_for(handler), query)

        assert result.rows == [{"id": 1}, {"id": 2}]
        assert result.total == 42
        request = seen["request"]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/robots"
        assert request.url.params["order"] == "created_at.desc"
        assert request.headers["Prefer"] == "count=exact"

    @pytest.mark.asyncio
    async def test_insert_asks_for_representation(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(201, json=[{"id": "new"}])

        query = BackendQuery(table="robots", operation="insert", body=[{"name": "Grid Bot"}])
        result = await SupabaseRestExecutor()(connection_for(handler), query)

        assert result.rows == [{"id": "new"}]
        assert seen["request"].method == "POST"
        assert seen["request"].headers["Prefer"] == "return=representation"
        assert b"Grid Bot" in seen["request"].content

    @pytest.mark.asyncio
    async def test_empty_body_yields_no_rows(self):
        query = BackendQuery(table="robots", operation="delete", params=(("id", "eq.1"),))
        result = await SupabaseRestExecutor()(connection_for(lambda r: httpx.Response(204)), query)
        assert result.rows == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (500, TransportError),
        (503, TransportError),
        (429, TransportError),
        (401, BackendAuthError),
        (403, BackendAuthError),
        (400, QueryValidationError),
        (409, BackendError),
    ])
    async def test_status_mapping(self, status, error):
        def handler(request):
            return httpx.Response(status, json={"message": "nope"})

        with pytest.raises(error) as exc_info:
            await SupabaseRestExecutor()(connection_for(handler), BackendQuery(table="robots"))
        assert "nope" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_network_failure_is_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportError):
            await SupabaseRestExecutor()(connection_for(handler), BackendQuery(table="robots"))

    @pytest.mark.asyncio
    async def test_client_timeout_is_query_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(QueryTimeoutError):
            await SupabaseRestExecutor()(connection_for(handler), BackendQuery(table="robots"))


class TestClientFactory:

    def test_read_and_write_keys(self, settings):
        settings = settings.model_copy(update={"supabase_service_role_key": "service-key"})
        factory = SupabaseClientFactory(settings)

        read = factory(ConnectionRole.READ, "eu", "read-eu-1")
        write = factory(ConnectionRole.WRITE, "eu", "write-eu-1")

        assert read.headers["apikey"] == "test-anon-key"
        assert write.headers["apikey"] == "service-key"
        assert read.headers["X-Connection-ID"] == "read-eu-1"
        assert read.headers["X-Connection-Region"] == "eu"
        assert str(read.base_url).startswith("https://test.supabase.co")

    @pytest.mark.asyncio
    async def test_probe(self):
        healthy = connection_for(lambda r: httpx.Response(200))
        failing = connection_for(lambda r: httpx.Response(503))
        assert await probe_connection(healthy)
        assert not await probe_connection(failing)
