"""Tests for the query optimizer: building, caching, deduplication and write paths."""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from caching.query_cache import QueryCache
from database import BackendResult
from models.query import FilterCondition, QuerySpec, SortKey
from monitoring.metrics import DataLayerMetrics, QueryMetricsRecorder
from utils.connection_pool import ConnectionPool, ConnectionRole
from utils.db_query_optimizer import QueryOptimizer, render_filter
from utils.exceptions import (
    PoolExhaustedError,
    QueryTimeoutError,
    QueryValidationError,
    TransportError,
)
from utils.request_deduplicator import RequestDeduplicator
from utils.retry_policy import RetryPolicy


async def no_sleep(seconds):
    return None


def fake_client_factory(role, region, connection_id):
    client = MagicMock(name=connection_id)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def executor():
    return AsyncMock(return_value=BackendResult(rows=[{"id": 1}], total=None))


@pytest.fixture
def optimizer(executor, clock):
    pool = ConnectionPool(fake_client_factory, max_connections=2, acquire_timeout_ms=50, clock=clock)
    return QueryOptimizer(
        pool=pool,
        executor=executor,
        cache=QueryCache(default_ttl_ms=1000, clock=clock),
        deduplicator=RequestDeduplicator(clock=clock),
        retry_policy=RetryPolicy(max_attempts=3, initial_delay_ms=1, max_delay_ms=5, sleep=no_sleep),
        recorder=QueryMetricsRecorder(clock=clock),
        prometheus=DataLayerMetrics(),
        query_timeout_ms=100,
    )


class TestBuild:

    def test_defaults_and_tie_break(self, optimizer):
        query = optimizer.build({"table": "robots"})
        assert query.params == (("select", "*"), ("order", "created_at.desc,id.desc"))
        assert query.operation == "select"
        assert query.query_type == "robots.select"

    def test_filters_sort_and_pagination(self, optimizer):
        spec = QuerySpec(
            table="robots",
            select=["id", "name"],
            filters=[
                FilterCondition(column="strategy_type", value="Grid"),
                FilterCondition(column="deleted_at", op="is", value=None),
            ],
            order_by=[SortKey(column="name")],
            limit=20,
            offset=40,
            count=True,
        )
        query = optimizer.build(spec)
        assert query.params == (
            ("select", "id,name"),
            ("strategy_type", "eq.Grid"),
            ("deleted_at", "is.null"),
            ("order", "name.asc,created_at.desc,id.desc"),
            ("limit", "20"),
            ("offset", "40"),
        )
        assert query.count

    def test_created_at_sort_still_ends_with_unique_key(self, optimizer):
        query = optimizer.build({"table": "robots", "order_by": [{"column": "created_at"}]})
        assert dict(query.params)["order"] == "created_at.asc,id.desc"

    def test_explicit_id_sort_is_not_repeated(self, optimizer):
        query = optimizer.build({"table": "robots", "order_by": [{"column": "id"}, {"column": "created_at"}]})
        assert dict(query.params)["order"] == "id.asc,created_at.asc"

    def test_paginate_by_page(self, optimizer):
        spec = QuerySpec(table="robots").paginate(page=3, per_page=10)
        params = dict(optimizer.build(spec).params)
        assert params["limit"] == "10"
        assert params["offset"] == "20"

    @pytest.mark.parametrize("raw", [
        {"table": "robots; drop table"},
        {"table": "robots", "filters": [{"column": "name", "op": "regex", "value": "x"}]},
        {"table": "robots", "filters": [{"column": "bad column", "value": "x"}]},
        {"table": "robots", "filters": [{"column": "id", "op": "in", "value": "1,2"}]},
        {"table": "robots", "filters": [{"column": "id", "op": "eq", "value": None}]},
        {"table": "robots", "limit": 0},
        {"table": "robots", "limit": 5000},
        {"table": "robots", "select": []},
    ])
    def test_malformed_specs_raise_validation_error(self, optimizer, raw):
        with pytest.raises(QueryValidationError):
            optimizer.build(raw)

    def test_in_filter_quotes_reserved_characters(self):
        condition = FilterCondition(column="name", op="in", value=["a", "b,c", True])
        assert render_filter(condition) == 'in.(a,"b,c",true)'

    def test_cache_key_ignores_param_order(self, optimizer):
        a = optimizer.build({"table": "robots", "filters": [
            {"column": "a", "value": 1}, {"column": "b", "value": 2}]})
        b = optimizer.build({"table": "robots", "filters": [
            {"column": "b", "value": 2}, {"column": "a", "value": 1}]})
        assert optimizer.cache_key(a) == optimizer.cache_key(b)
        assert optimizer.cache_key(a).startswith("query:robots:")


class TestExecute:

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, optimizer, executor):
        first = await optimizer.execute({"table": "robots"})
        second = await optimizer.execute({"table": "robots"})

        assert not first.cache_hit
        assert second.cache_hit
        assert second.rows == [{"id": 1}]
        assert executor.await_count == 1
        assert len(optimizer.recorder) == 2

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_cache(self, optimizer, executor):
        await optimizer.execute({"table": "robots"})
        result = await optimizer.execute({"table": "robots"}, force_refresh=True)
        assert not result.cache_hit
        assert executor.await_count == 2

    @pytest.mark.asyncio
    async def test_ttl_expiry_refetches(self, optimizer, executor, clock):
        await optimizer.execute({"table": "robots"}, ttl_ms=100)
        clock.advance(150)
        await optimizer.execute({"table": "robots"})
        assert executor.await_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_identical_queries_execute_once(self, optimizer, executor):
        release = asyncio.Event()

        async def slow(conn, query):
            await release.wait()
            return BackendResult(rows=[{"id": 7}])

        executor.side_effect = slow
        tasks = [asyncio.create_task(optimizer.execute({"table": "robots"})) for _ in range(10)]
        await asyncio.sleep(0.01)
        release.set()
        results = await asyncio.gather(*tasks)

        assert executor.await_count == 1
        assert all(r.rows == [{"id": 7}] for r in results)

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried_and_recorded_on_connection(self, optimizer, executor):
        executor.side_effect = [
            TransportError("503", status_code=503),
            BackendResult(rows=[{"id": 2}]),
        ]
        result = await optimizer.execute({"table": "robots"})
        assert result.rows == [{"id": 2}]
        assert executor.await_count == 2
        conn = optimizer.pool.connections(ConnectionRole.READ)[0]
        assert conn.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_validation_errors_are_not_retried(self, optimizer, executor):
        executor.side_effect = QueryValidationError("PGRST100")
        with pytest.raises(QueryValidationError):
            await optimizer.execute({"table": "robots"})
        assert executor.await_count == 1
        metric = optimizer.recorder.entries()[-1]
        assert not metric.success
        assert metric.error_type == "QueryValidationError"

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, optimizer, executor):
        executor.side_effect = [
            TransportError("down"), TransportError("down"), TransportError("down"),
            BackendResult(rows=[{"id": 3}]),
        ]
        with pytest.raises(TransportError):
            await optimizer.execute({"table": "robots"})
        result = await optimizer.execute({"table": "robots"})
        assert result.rows == [{"id": 3}]
        assert not result.cache_hit

    @pytest.mark.asyncio
    async def test_slow_backend_raises_query_timeout(self, optimizer, executor):
        async def hang(conn, query):
            await asyncio.sleep(10)

        executor.side_effect = hang
        optimizer.retry_policy.max_attempts = 1
        with pytest.raises(QueryTimeoutError):
            await optimizer.execute({"table": "robots"})
        conn = optimizer.pool.connections(ConnectionRole.READ)[0]
        assert conn.consecutive_failures == 1
        assert not conn.in_use

    @pytest.mark.asyncio
    async def test_pool_exhaustion_surfaces_immediately(self, optimizer, executor):
        held = [await optimizer.pool.acquire("read") for _ in range(2)]
        with pytest.raises(PoolExhaustedError):
            await optimizer.execute({"table": "robots"})
        assert executor.await_count == 0
        for conn in held:
            optimizer.pool.release(conn)

    @pytest.mark.asyncio
    async def test_slow_queries_are_counted(self, optimizer):
        optimizer.slow_query_threshold_ms = 0
        optimizer.recorder.slow_query_threshold_ms = 0
        await optimizer.execute({"table": "robots"})
        assert optimizer.recorder.summary()["slow_queries"] == 1


class TestMutate:

    @pytest.mark.asyncio
    async def test_insert_invalidates_table(self, optimizer, executor):
        await optimizer.execute({"table": "robots"})
        assert len(optimizer.cache) == 1

        executor.return_value = BackendResult(rows=[{"id": 9}])
        rows = await optimizer.mutate("robots", "insert", rows=[{"name": "New"}])

        assert rows == [{"id": 9}]
        assert len(optimizer.cache) == 0
        query = executor.await_args.args[1]
        assert query.operation == "insert"
        assert query.method == "POST"
        assert query.body == [{"name": "New"}]
        conn = executor.await_args.args[0]
        assert conn.role == ConnectionRole.WRITE

    @pytest.mark.asyncio
    async def test_update_renders_filters(self, optimizer, executor):
        await optimizer.mutate(
            "robots", "update",
            values={"name": "Renamed"},
            filters=[{"column": "id", "value": "abc"}],
        )
        query = executor.await_args.args[1]
        assert query.params == (("id", "eq.abc"),)
        assert query.body == {"name": "Renamed"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation,kwargs", [
        ("upsert", {"rows": [{}]}),
        ("insert", {"rows": []}),
        ("update", {"values": {"a": 1}}),
        ("update", {"values": {}, "filters": [{"column": "id", "value": 1}]}),
        ("delete", {}),
    ])
    async def test_invalid_mutations(self, optimizer, executor, operation, kwargs):
        with pytest.raises(QueryValidationError):
            await optimizer.mutate("robots", operation, **kwargs)
        assert executor.await_count == 0

    @pytest.mark.asyncio
    async def test_insert_committed_before_transport_error_is_not_replayed(self, optimizer, executor):
        stored = []

        async def commit_then_drop(conn, query):
            stored.extend(query.body)
            raise TransportError("Bad gateway", status_code=502)

        executor.side_effect = commit_then_drop
        with pytest.raises(TransportError):
            await optimizer.mutate("robots", "insert", rows=[{"name": "Once"}])

        assert executor.await_count == 1
        assert stored == [{"name": "Once"}]
        assert optimizer.retry_policy.total_retries == 0

    @pytest.mark.asyncio
    async def test_update_is_not_retried(self, optimizer, executor):
        executor.side_effect = TransportError("Bad gateway", status_code=502)
        with pytest.raises(TransportError):
            await optimizer.mutate(
                "robots", "update",
                values={"name": "Renamed"},
                filters=[{"column": "id", "value": "abc"}],
            )
        assert executor.await_count == 1

    @pytest.mark.asyncio
    async def test_delete_is_retried(self, optimizer, executor):
        executor.side_effect = [
            TransportError("Bad gateway", status_code=502),
            BackendResult(rows=[{"id": "abc"}]),
        ]
        rows = await optimizer.mutate("robots", "delete", filters=[{"column": "id", "value": "abc"}])
        assert rows == [{"id": "abc"}]
        assert executor.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_write_still_invalidates_table(self, optimizer, executor):
        await optimizer.execute({"table": "robots"})
        assert len(optimizer.cache) == 1

        executor.side_effect = TransportError("Bad gateway", status_code=502)
        with pytest.raises(TransportError):
            await optimizer.mutate("robots", "insert", rows=[{"name": "Maybe"}])
        assert len(optimizer.cache) == 0

    @pytest.mark.asyncio
    async def test_rejected_write_keeps_cached_reads(self, optimizer, executor):
        await optimizer.execute({"table": "robots"})
        executor.side_effect = QueryValidationError("PGRST204")
        with pytest.raises(QueryValidationError):
            await optimizer.mutate("robots", "insert", rows=[{"name": "Bad"}])
        assert len(optimizer.cache) == 1

    @pytest.mark.asyncio
    async def test_read_started_before_invalidation_is_not_cached(self, optimizer, executor):
        release = asyncio.Event()

        async def slow(conn, query):
            await release.wait()
            return BackendResult(rows=[{"id": "stale"}])

        executor.side_effect = slow
        read = asyncio.create_task(optimizer.execute({"table": "robots"}))
        await asyncio.sleep(0.01)
        optimizer.invalidate_table("robots")
        release.set()
        await read

        assert len(optimizer.cache) == 0

    def test_get_stats(self, optimizer):
        stats = optimizer.get_stats()
        assert set(stats) == {"queries", "cache", "deduplication", "retry"}
