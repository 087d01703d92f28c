"""
Database query optimizer with caching, request deduplication and performance monitoring.
Turns declarative QuerySpecs into PostgREST queries and runs them through the pool.
"""
import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from caching.query_cache import CACHE_MISS, QueryCache
from database import BackendQuery, BackendResult
from models.query import IDENTIFIER, FilterCondition, FilterOperator, QuerySpec
from monitoring.metrics import DataLayerMetrics, QueryMetricsRecorder
from utils.connection_pool import ConnectionPool, ConnectionRole, PooledConnection
from utils.exceptions import (
    PoolExhaustedError,
    QueryTimeoutError,
    QueryValidationError,
    TransportError,
)
from utils.request_deduplicator import RequestDeduplicator
from utils.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

Executor = Callable[[PooledConnection, BackendQuery], Awaitable[BackendResult]]

TIE_BREAK_COLUMN = "created_at"
UNIQUE_TIE_BREAK_COLUMN = "id"
WRITE_OPERATIONS = ("insert", "update", "delete")
# PostgREST DELETE is idempotent; POST and PATCH may have committed before a transport failure.
RETRYABLE_WRITES = ("delete",)
RESERVED_CHARS = set(',.:()"\\ ')


@dataclass
class QueryResult:
    """Rows for one execution plus where they came from."""
    rows: List[Dict[str, Any]]
    total: Optional[int]
    cache_hit: bool
    duration_ms: float


def _validation_error(e: ValidationError, what: str) -> QueryValidationError:
    errors = e.errors(include_url=False, include_context=False)
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    return QueryValidationError(
        f"Invalid {what}: {first.get('msg', str(e))}",
        field=field,
        details={"errors": errors},
    )


def _quote(value: Any) -> str:
    text = str(value)
    if any(ch in RESERVED_CHARS for ch in text):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def _scalar(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render_filter(condition: FilterCondition) -> str:
    """PostgREST filter value such as 'eq.5', 'in.(a,b)' or 'is.null'."""
    op = condition.op
    if op == FilterOperator.IN:
        return f"in.({','.join(_quote(_scalar(v)) for v in condition.value)})"
    return f"{op.value}.{_scalar(condition.value)}"


class QueryOptimizer:
    """Query builder and executor: cache, then dedupe, then pool, then backend."""

    def __init__(
        self,
        pool: ConnectionPool,
        executor: Executor,
        cache: QueryCache,
        deduplicator: RequestDeduplicator,
        retry_policy: RetryPolicy,
        recorder: QueryMetricsRecorder,
        prometheus: Optional[DataLayerMetrics] = None,
        query_timeout_ms: int = 30_000,
        slow_query_threshold_ms: float = 1000.0,
    ):
        self.pool = pool
        self.executor = executor
        self.cache = cache
        self.deduplicator = deduplicator
        self.retry_policy = retry_policy
        self.recorder = recorder
        self.prometheus = prometheus
        self.query_timeout_ms = query_timeout_ms
        self.slow_query_threshold_ms = slow_query_threshold_ms

        # Bumped on every invalidation so a read that started earlier never repopulates the cache.
        self._generations: Dict[str, int] = defaultdict(int)

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    @staticmethod
    def parse_spec(spec: Union[QuerySpec, Dict[str, Any]]) -> QuerySpec:
        """Validate a raw spec. Malformed specs raise QueryValidationError."""
        if isinstance(spec, QuerySpec):
            if spec.limit is not None and not 1 <= spec.limit <= 1000:
                raise QueryValidationError(f"limit {spec.limit} out of range 1..1000", field="limit")
            return spec
        try:
            return QuerySpec.model_validate(spec)
        except ValidationError as e:
            raise _validation_error(e, "query") from e

    def build(self, spec: Union[QuerySpec, Dict[str, Any]]) -> BackendQuery:
        spec = self.parse_spec(spec)
        params = [("select", ",".join(spec.select))]
        params.extend((f.column, render_filter(f)) for f in spec.filters)

        order = [f"{key.column}.{'desc' if key.descending else 'asc'}" for key in spec.order_by]
        sorted_columns = {key.column for key in spec.order_by}
        # created_at is not unique (one statement shares now()), so id always closes the order.
        for column in (TIE_BREAK_COLUMN, UNIQUE_TIE_BREAK_COLUMN):
            if column not in sorted_columns:
                order.append(f"{column}.desc")
        params.append(("order", ",".join(order)))

        if spec.limit is not None:
            params.append(("limit", str(spec.limit)))
        if spec.offset:
            params.append(("offset", str(spec.offset)))

        return BackendQuery(
            table=spec.table,
            operation="select",
            params=tuple(params),
            count=spec.count,
            query_type=spec.resolved_query_type,
        )

    @staticmethod
    def cache_key(query: BackendQuery) -> str:
        return f"query:{query.table}:{query.signature()}"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def execute(
        self,
        spec: Union[QuerySpec, Dict[str, Any]],
        *,
        region: Optional[str] = None,
        ttl_ms: Optional[int] = None,
        force_refresh: bool = False,
    ) -> QueryResult:
        """Run a read query through cache, deduplicator, retry policy and pool."""
        query = self.build(spec)
        key = self.cache_key(query)
        started = time.perf_counter()
        cache_hit = False
        success = False
        error_type = None
        result_count = 0

        try:
            cached = CACHE_MISS if force_refresh else self.cache.get(key)
            if cached is not CACHE_MISS:
                cache_hit = True
                result = cached
                logger.debug(f"🚀 [DB-OPTIMIZER] Cache hit for {query.query_type}")
            else:
                result = await self.deduplicator.dedupe(
                    key, lambda: self._fetch(query, key, region, ttl_ms)
                )
            result_count = len(result.rows)
            success = True
            return QueryResult(
                rows=result.rows,
                total=result.total,
                cache_hit=cache_hit,
                duration_ms=(time.perf_counter() - started) * 1000,
            )
        except Exception as e:
            error_type = type(e).__name__
            logger.error(f"❌ [DB-OPTIMIZER] Query failed for {query.query_type}: {e}")
            raise
        finally:
            self._record(query, key, started, result_count, cache_hit, success, error_type)

    async def _fetch(
        self,
        query: BackendQuery,
        key: str,
        region: Optional[str],
        ttl_ms: Optional[int],
    ) -> BackendResult:
        generation = self._generations[query.table]
        result = await self.retry_policy.call(self._execute_once, query, ConnectionRole.READ, region)
        if self._generations[query.table] == generation:
            self.cache.set(key, result, ttl_ms=ttl_ms, tags=(query.table,))
        else:
            logger.debug(f"[DB-OPTIMIZER] {query.table} invalidated during fetch, result not cached")
        return result

    async def _execute_once(
        self,
        query: BackendQuery,
        role: ConnectionRole,
        region: Optional[str],
    ) -> BackendResult:
        try:
            async with self.pool.connection(role, region) as conn:
                try:
                    result = await asyncio.wait_for(
                        self.executor(conn, query),
                        timeout=self.query_timeout_ms / 1000,
                    )
                except asyncio.TimeoutError as e:
                    self.pool.record_failure(conn)
                    raise QueryTimeoutError(f"{query.table}.{query.operation}", self.query_timeout_ms) from e
                except TransportError:
                    self.pool.record_failure(conn)
                    raise
                self.pool.record_success(conn)
                return result
        except PoolExhaustedError:
            if self.prometheus is not None:
                self.prometheus.record_pool_exhaustion(role.value)
            raise

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def mutate(
        self,
        table: str,
        operation: str,
        *,
        rows: Optional[List[Dict[str, Any]]] = None,
        values: Optional[Dict[str, Any]] = None,
        filters: Optional[Iterable[Union[FilterCondition, Dict[str, Any]]]] = None,
        region: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Insert, update or delete on the write role, then invalidate the table's cached reads.

        Inserts and updates are sent once: a transport error after the backend
        committed must not replay the write. Deletes are retried.
        """
        query = self._build_mutation(table, operation, rows, values, filters)
        started = time.perf_counter()
        success = False
        error_type = None
        result_count = 0

        try:
            if operation in RETRYABLE_WRITES:
                result = await self.retry_policy.call(self._execute_once, query, ConnectionRole.WRITE, region)
            else:
                result = await self.retry_policy.call_once(self._execute_once, query, ConnectionRole.WRITE, region)
            result_count = len(result.rows)
            success = True
        except Exception as e:
            error_type = type(e).__name__
            logger.error(f"❌ [DB-OPTIMIZER] {table}.{operation} failed: {e}")
            if isinstance(e, TransportError):
                # The write may have committed before the failure.
                self.invalidate_table(table)
            raise
        finally:
            self._record(query, None, started, result_count, False, success, error_type)

        self.invalidate_table(table)
        return result.rows

    def _build_mutation(
        self,
        table: str,
        operation: str,
        rows: Optional[List[Dict[str, Any]]],
        values: Optional[Dict[str, Any]],
        filters: Optional[Iterable[Union[FilterCondition, Dict[str, Any]]]],
    ) -> BackendQuery:
        if not isinstance(table, str) or not IDENTIFIER.match(table):
            raise QueryValidationError(f"Invalid table name: {table!r}", field="table")
        if operation not in WRITE_OPERATIONS:
            raise QueryValidationError(f"Unsupported write operation: {operation!r}", field="operation")

        conditions = []
        for raw in filters or ():
            if isinstance(raw, FilterCondition):
                conditions.append(raw)
                continue
            try:
                conditions.append(FilterCondition.model_validate(raw))
            except ValidationError as e:
                raise _validation_error(e, "filter") from e

        if operation == "insert":
            if not rows or not all(isinstance(row, dict) for row in rows):
                raise QueryValidationError("insert needs a non-empty list of rows", field="rows")
            body: Any = list(rows)
        else:
            if not conditions:
                raise QueryValidationError(f"{operation} on {table} needs at least one filter", field="filters")
            if operation == "update":
                if not values:
                    raise QueryValidationError("update needs values to set", field="values")
                body = dict(values)
            else:
                body = None

        return BackendQuery(
            table=table,
            operation=operation,
            params=tuple((c.column, render_filter(c)) for c in conditions),
            body=body,
            query_type=f"{table}.{operation}",
        )

    # ------------------------------------------------------------------
    # Cache management and stats
    # ------------------------------------------------------------------

    def invalidate_table(self, table: str) -> int:
        """Drop every cached read tagged with `table`."""
        self._generations[table] += 1
        removed = self.cache.invalidate(table)
        logger.info(f"🧹 [DB-OPTIMIZER] Invalidated {removed} cached queries for table {table}")
        return removed

    def _record(
        self,
        query: BackendQuery,
        key: Optional[str],
        started: float,
        result_count: int,
        cache_hit: bool,
        success: bool,
        error_type: Optional[str],
    ) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        self.recorder.record(
            query_type=query.query_type,
            duration_ms=duration_ms,
            result_count=result_count,
            cache_hit=cache_hit,
            success=success,
            error_type=error_type,
        )
        extra = {"query_type": query.query_type, "cache_key": key, "duration_ms": round(duration_ms, 3)}
        if duration_ms > self.slow_query_threshold_ms:
            logger.warning(
                f"🐌 [DB-OPTIMIZER] Slow query detected: {query.query_type} took {duration_ms:.0f}ms",
                extra=extra,
            )
        elif cache_hit:
            logger.debug(f"⚡ [DB-OPTIMIZER] {query.query_type} completed in {duration_ms:.3f}ms (cached)", extra=extra)
        else:
            logger.debug(f"🔍 [DB-OPTIMIZER] {query.query_type} completed in {duration_ms:.3f}ms (database)", extra=extra)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "queries": self.recorder.summary(),
            "cache": self.cache.stats(),
            "deduplication": self.deduplicator.stats(),
            "retry": self.retry_policy.get_stats(),
        }
