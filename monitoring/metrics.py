"""
Query metrics collection for the data layer.
Keeps an append-only QueryMetric log for analysis and mirrors it into Prometheus metrics.
"""
import time
from collections import Counter as TallyCounter
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


@dataclass(frozen=True)
class QueryMetric:
    """One completed query execution. Never mutated after creation."""
    query_type: str
    duration_ms: float
    result_count: int
    cache_hit: bool
    success: bool = True
    error_type: Optional[str] = None
    recorded_at: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DataLayerMetrics:
    """Prometheus metrics for queries, cache, pool and batch operations."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.queries_total = Counter(
            'quantforge_queries_total',
            'Total number of data layer queries',
            ['query_type', 'status', 'cache'],
            registry=self.registry
        )

        self.query_duration = Histogram(
            'quantforge_query_duration_seconds',
            'Query duration in seconds, including cache lookups',
            ['query_type'],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry
        )

        self.cache_lookups_total = Counter(
            'quantforge_cache_lookups_total',
            'Query cache lookups by outcome',
            ['outcome'],
            registry=self.registry
        )

        self.pool_exhaustion_total = Counter(
            'quantforge_pool_exhaustion_total',
            'Acquire calls that timed out waiting for a connection',
            ['role'],
            registry=self.registry
        )

        self.pool_connections_in_use = Gauge(
            'quantforge_pool_connections_in_use',
            'Connections currently checked out',
            ['role'],
            registry=self.registry
        )

        self.batch_items_total = Counter(
            'quantforge_batch_items_total',
            'Batch items processed by outcome',
            ['outcome'],
            registry=self.registry
        )

    def record_query(self, metric: QueryMetric) -> None:
        self.queries_total.labels(
            query_type=metric.query_type,
            status="success" if metric.success else "failure",
            cache="hit" if metric.cache_hit else "miss",
        ).inc()
        self.query_duration.labels(query_type=metric.query_type).observe(metric.duration_ms / 1000)
        self.cache_lookups_total.labels(outcome="hit" if metric.cache_hit else "miss").inc()

    def record_pool_exhaustion(self, role: str) -> None:
        self.pool_exhaustion_total.labels(role=role).inc()

    def set_connections_in_use(self, role: str, count: int) -> None:
        self.pool_connections_in_use.labels(role=role).set(count)

    def record_batch(self, succeeded: int, failed: int) -> None:
        if succeeded:
            self.batch_items_total.labels(outcome="succeeded").inc(succeeded)
        if failed:
            self.batch_items_total.labels(outcome="failed").inc(failed)

    def render(self) -> bytes:
        return generate_latest(self.registry)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST


class QueryMetricsRecorder:
    """Append-only QueryMetric log with retention pruning and summary analysis."""

    def __init__(
        self,
        retention_ms: int = 86_400_000,
        slow_query_threshold_ms: float = 1000.0,
        max_entries: int = 10_000,
        prometheus: Optional[DataLayerMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retention_ms = retention_ms
        self.slow_query_threshold_ms = slow_query_threshold_ms
        self.prometheus = prometheus
        self._clock = clock
        self._log: Deque[QueryMetric] = deque(maxlen=max_entries)

    def record(
        self,
        query_type: str,
        duration_ms: float,
        result_count: int,
        cache_hit: bool,
        success: bool = True,
        error_type: Optional[str] = None,
    ) -> QueryMetric:
        metric = QueryMetric(
            query_type=query_type,
            duration_ms=duration_ms,
            result_count=result_count,
            cache_hit=cache_hit,
            success=success,
            error_type=error_type,
            recorded_at=self._clock(),
        )
        self._log.append(metric)
        if self.prometheus is not None:
            self.prometheus.record_query(metric)
        return metric

    def entries(self) -> List[QueryMetric]:
        return list(self._log)

    def __len__(self) -> int:
        return len(self._log)

    def prune(self) -> int:
        """Drop metrics older than the retention window."""
        cutoff = self._clock() - self.retention_ms / 1000
        removed = 0
        while self._log and self._log[0].recorded_at < cutoff:
            self._log.popleft()
            removed += 1
        return removed

    def summary(self) -> Dict[str, Any]:
        """Aggregate view used by the health endpoint and slow-query analysis."""
        metrics = list(self._log)
        total = len(metrics)
        if not total:
            return {"total_queries": 0}

        hits = sum(1 for m in metrics if m.cache_hit)
        failures = [m for m in metrics if not m.success]
        slow = [m for m in metrics if m.duration_ms > self.slow_query_threshold_ms]
        tally = TallyCounter(m.query_type for m in metrics)

        return {
            "total_queries": total,
            "cache_hit_ratio": round(hits / total, 3),
            "avg_duration_ms": round(sum(m.duration_ms for m in metrics) / total, 3),
            "slow_queries": len(slow),
            "failures": len(failures),
            "failure_types": dict(TallyCounter(m.error_type for m in failures)),
            "top_query_types": tally.most_common(10),
        }
