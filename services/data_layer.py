"""
Data layer container.
Builds the cache, pool, deduplicator, retry policy, metrics and scheduler once and
hands them out by reference. There are no module-level instances.
"""
import logging
import time
from typing import Any, Callable, Dict, Optional

from caching.query_cache import QueryCache
from config import Settings
from database import SupabaseClientFactory, SupabaseRestExecutor, probe_connection
from monitoring.metrics import DataLayerMetrics, QueryMetricsRecorder
from repositories.robot_repository import RobotRepository
from utils.circuit_breaker import CircuitBreakerState
from utils.connection_pool import ClientFactory, ConnectionPool, ConnectionRole, HealthProbe
from utils.db_query_optimizer import Executor, QueryOptimizer
from utils.exceptions import ConfigurationError
from utils.request_deduplicator import RequestDeduplicator
from utils.retry_policy import RetryPolicy
from utils.scheduler import PeriodicTaskScheduler

logger = logging.getLogger(__name__)


class DataLayer:
    """Owns every data layer component for the lifetime of the application."""

    def __init__(
        self,
        settings: Settings,
        pool: ConnectionPool,
        cache: QueryCache,
        deduplicator: RequestDeduplicator,
        retry_policy: RetryPolicy,
        recorder: QueryMetricsRecorder,
        metrics: DataLayerMetrics,
        optimizer: QueryOptimizer,
        scheduler: PeriodicTaskScheduler,
        robots: RobotRepository,
    ):
        self.settings = settings
        self.pool = pool
        self.cache = cache
        self.deduplicator = deduplicator
        self.retry_policy = retry_policy
        self.recorder = recorder
        self.metrics = metrics
        self.optimizer = optimizer
        self.scheduler = scheduler
        self.robots = robots
        self._closed = False

    @classmethod
    async def create(
        cls,
        settings: Settings,
        executor: Optional[Executor] = None,
        client_factory: Optional[ClientFactory] = None,
        health_probe: Optional[HealthProbe] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
        start_background: bool = True,
    ) -> "DataLayer":
        """Build and initialize every component.

        Without a client_factory the pool talks to Supabase, so SUPABASE_URL is required.
        """
        if client_factory is None:
            if not settings.supabase_url or not settings.supabase_anon_key:
                raise ConfigurationError("SUPABASE_URL and SUPABASE_ANON_KEY are required")
            client_factory = SupabaseClientFactory(settings)
            if health_probe is None:
                health_probe = probe_connection

        metrics = DataLayerMetrics()
        recorder = QueryMetricsRecorder(
            retention_ms=settings.metrics_retention_ms,
            slow_query_threshold_ms=settings.slow_query_threshold_ms,
            prometheus=metrics,
            clock=clock,
        )
        cache = QueryCache.from_settings(settings, clock=clock)
        deduplicator = RequestDeduplicator(clock=clock)
        pool = ConnectionPool.from_settings(settings, client_factory, health_probe=health_probe, clock=clock)
        retry_policy = retry_policy or RetryPolicy.from_settings(settings, clock=clock)

        optimizer = QueryOptimizer(
            pool=pool,
            executor=executor or SupabaseRestExecutor(),
            cache=cache,
            deduplicator=deduplicator,
            retry_policy=retry_policy,
            recorder=recorder,
            prometheus=metrics,
            query_timeout_ms=settings.query_timeout_ms,
            slow_query_threshold_ms=settings.slow_query_threshold_ms,
        )
        robots = RobotRepository(
            optimizer,
            batch_size=settings.batch_size,
            batch_concurrency=settings.batch_concurrency,
            metrics=metrics,
        )

        scheduler = PeriodicTaskScheduler()
        scheduler.add("cache_sweep", settings.cache_sweep_interval_ms, cache.sweep_async)
        scheduler.add("pool_health_check", settings.health_check_interval_ms, pool.run_health_checks)
        scheduler.add("pool_reap_idle", settings.health_check_interval_ms, pool.reap_idle)
        scheduler.add("metrics_prune", settings.cache_sweep_interval_ms, recorder.prune)

        layer = cls(
            settings=settings,
            pool=pool,
            cache=cache,
            deduplicator=deduplicator,
            retry_policy=retry_policy,
            recorder=recorder,
            metrics=metrics,
            optimizer=optimizer,
            scheduler=scheduler,
            robots=robots,
        )

        await pool.initialize()
        if start_background:
            scheduler.start()

        logger.info(f"✅ [DATA-LAYER] Ready ({settings.environment}, region {settings.default_region})")
        return layer

    async def shutdown(self) -> None:
        """Stop background tasks, close the pool and drop cached data. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        logger.info("👋 [DATA-LAYER] Shutting down...")
        await self.scheduler.shutdown()
        await self.pool.shutdown()
        self.cache.clear()
        logger.info("✅ [DATA-LAYER] Shutdown complete")

    def refresh_gauges(self) -> None:
        for role in ConnectionRole:
            in_use = sum(1 for c in self.pool.connections(role) if c.in_use)
            self.metrics.set_connections_in_use(role.value, in_use)

    def health(self) -> Dict[str, Any]:
        pool_stats = self.pool.get_stats()
        unhealthy = sum(role["unhealthy"] for role in pool_stats["roles"].values())
        breaker = self.retry_policy.circuit_breaker
        circuit_open = breaker is not None and breaker.state != CircuitBreakerState.CLOSED
        if self._closed or pool_stats["closed"]:
            status = "unavailable"
        elif unhealthy or circuit_open:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "service": self.settings.service_name,
            "version": self.settings.service_version,
            "environment": self.settings.environment,
            "pool": pool_stats,
            "cache": self.cache.stats(),
            "deduplication": self.deduplicator.stats(),
            "retry": self.retry_policy.get_stats(),
            "queries": self.recorder.summary(),
            "scheduler": self.scheduler.get_stats(),
            "timestamp": time.time(),
        }
