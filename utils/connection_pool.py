"""
Logical connection pool for Supabase REST clients.

Connections are tagged with a role (read/write) and a region. The pool bounds
the number of live connections per role, prefers healthy idle connections in
the caller's region, creates new ones lazily up to the limit, and queues
callers FIFO with a bounded wait when everything is busy. Health checks and
idle reaping are run by the scheduler.
"""
import asyncio
import inspect
import logging
import time
import uuid
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional

from utils.exceptions import PoolClosedError, PoolExhaustedError

logger = logging.getLogger(__name__)


class ConnectionRole(str, Enum):
    """Workload a connection serves."""
    READ = "read"
    WRITE = "write"


@dataclass
class PooledConnection:
    """A pooled backend client plus its bookkeeping."""
    id: str
    role: ConnectionRole
    region: str
    client: Any
    created_at: float
    last_used_at: float
    healthy: bool = True
    in_use: bool = False
    consecutive_failures: int = 0
    unhealthy_since: Optional[float] = None
    uses: int = field(default=0)


ClientFactory = Callable[[ConnectionRole, str, str], Any]
HealthProbe = Callable[[PooledConnection], Awaitable[bool]]


class ConnectionPool:
    """Bounded per-role pool with region preference, health flags and FIFO waiters."""

    def __init__(
        self,
        client_factory: ClientFactory,
        max_connections: int = 10,
        min_connections: int = 0,
        acquire_timeout_ms: int = 5000,
        idle_timeout_ms: int = 180_000,
        unhealthy_threshold: int = 3,
        unhealthy_cooldown_ms: int = 30_000,
        default_region: str = "default",
        health_probe: Optional[HealthProbe] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_connections < 1:
            raise ValueError("max_connections must be >= 1")
        self.client_factory = client_factory
        self.max_connections = max_connections
        self.min_connections = min(min_connections, max_connections)
        self.acquire_timeout_ms = acquire_timeout_ms
        self.idle_timeout_ms = idle_timeout_ms
        self.unhealthy_threshold = unhealthy_threshold
        self.unhealthy_cooldown_ms = unhealthy_cooldown_ms
        self.default_region = default_region
        self.health_probe = health_probe
        self._clock = clock

        self._connections: Dict[str, PooledConnection] = {}
        self._pending_creations: Dict[ConnectionRole, int] = {role: 0 for role in ConnectionRole}
        self._waiters: Dict[ConnectionRole, Deque[asyncio.Future]] = {role: deque() for role in ConnectionRole}
        self._closed = False
        self.is_initialized = False

        self.metrics = {
            "acquired_total": 0,
            "created_total": 0,
            "destroyed_total": 0,
            "exhaustion_events": 0,
            "handoffs": 0,
            "health_checks": 0,
            "health_failures": 0,
            "total_acquire_time_ms": 0.0,
        }

    @classmethod
    def from_settings(
        cls,
        settings,
        client_factory: ClientFactory,
        health_probe: Optional[HealthProbe] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "ConnectionPool":
        return cls(
            client_factory=client_factory,
            max_connections=settings.max_connections,
            min_connections=settings.min_connections,
            acquire_timeout_ms=settings.acquire_timeout_ms,
            idle_timeout_ms=settings.idle_timeout_ms,
            unhealthy_threshold=settings.unhealthy_threshold,
            unhealthy_cooldown_ms=settings.unhealthy_cooldown_ms,
            default_region=settings.default_region,
            health_probe=health_probe,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Warm up min_connections per role."""
        if self.is_initialized:
            return
        for role in ConnectionRole:
            for _ in range(self.min_connections - self.count(role)):
                await self._create(role, self.default_region)
        self.is_initialized = True
        logger.info(
            f"✅ [POOL] Initialized with {len(self._connections)} connections "
            f"(max {self.max_connections} per role)"
        )

    async def shutdown(self) -> None:
        """Fail waiters, close every client and reject further acquires."""
        if self._closed:
            return
        self._closed = True
        for role in ConnectionRole:
            waiters = self._waiters[role]
            while waiters:
                waiter = waiters.popleft()
                if not waiter.done():
                    waiter.set_exception(PoolClosedError())
        for conn in list(self._connections.values()):
            await self._destroy(conn)
        self.is_initialized = False
        logger.info("Connection pool closed")

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def acquire(
        self,
        role: ConnectionRole = ConnectionRole.READ,
        preferred_region: Optional[str] = None,
        timeout_ms: Optional[float] = None,
    ) -> PooledConnection:
        """Get a connection, waiting up to the acquire timeout when the pool is full."""
        role = ConnectionRole(role)
        if self._closed:
            raise PoolClosedError()

        loop = asyncio.get_running_loop()
        timeout_ms = self.acquire_timeout_ms if timeout_ms is None else timeout_ms
        started = loop.time()
        deadline = started + timeout_ms / 1000
        region = preferred_region or self.default_region

        while True:
            conn = self._select(role, region)
            if conn is not None:
                return self._checkout(conn, started)

            if self.count(role) < self.max_connections:
                conn = await self._create(role, region)
                if self._closed:
                    await self._destroy(conn)
                    raise PoolClosedError()
                return self._checkout(conn, started)

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise self._exhausted(role, timeout_ms)

            waiter = loop.create_future()
            self._waiters[role].append(waiter)
            try:
                handed = await asyncio.wait_for(waiter, timeout=remaining)
            except asyncio.TimeoutError:
                # A release may have handed us a connection just as the timer fired.
                if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                    handed = waiter.result()
                else:
                    raise self._exhausted(role, timeout_ms)
            except asyncio.CancelledError:
                # Caller gave up after a handoff: put the connection back.
                if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                    if waiter.result() is not None:
                        self.release(waiter.result())
                raise
            finally:
                if waiter in self._waiters[role]:
                    self._waiters[role].remove(waiter)

            if handed is not None:
                return self._checkout(handed, started)
            # Woken without a handoff (capacity freed or health restored): select again.

    def release(self, conn: PooledConnection) -> None:
        """Return a connection to the pool, handing it to the oldest waiter if any."""
        if conn.id not in self._connections:
            return
        conn.last_used_at = self._clock()

        if conn.healthy and not self._closed:
            waiter = self._next_waiter(conn.role)
            if waiter is not None:
                # Stays in_use: ownership moves straight to the waiter.
                self.metrics["handoffs"] += 1
                waiter.set_result(conn)
                return

        conn.in_use = False

    @asynccontextmanager
    async def connection(
        self,
        role: ConnectionRole = ConnectionRole.READ,
        preferred_region: Optional[str] = None,
    ) -> AsyncIterator[PooledConnection]:
        """Acquire a connection for the duration of the block."""
        conn = await self.acquire(role, preferred_region)
        try:
            yield conn
        finally:
            self.release(conn)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def mark_unhealthy(self, conn: PooledConnection) -> None:
        """Exclude a connection from selection until a health check passes after cooldown."""
        if conn.healthy:
            logger.warning(f"⚠️ [POOL] Connection {conn.id} ({conn.role.value}/{conn.region}) marked unhealthy")
        conn.healthy = False
        conn.unhealthy_since = self._clock()

    def record_failure(self, conn: PooledConnection) -> None:
        """Count a transport failure; too many in a row marks the connection unhealthy."""
        conn.consecutive_failures += 1
        if conn.consecutive_failures >= self.unhealthy_threshold:
            self.mark_unhealthy(conn)

    def record_success(self, conn: PooledConnection) -> None:
        conn.consecutive_failures = 0

    async def run_health_checks(self) -> Dict[str, int]:
        """Probe idle connections; restore unhealthy ones whose cooldown has elapsed."""
        checked = failed = restored = 0
        now = self._clock()
        for conn in list(self._connections.values()):
            if conn.in_use or conn.id not in self._connections:
                continue
            if not conn.healthy:
                if conn.unhealthy_since is not None and (now - conn.unhealthy_since) * 1000 < self.unhealthy_cooldown_ms:
                    continue
                checked += 1
                if await self._probe(conn):
                    conn.healthy = True
                    conn.consecutive_failures = 0
                    conn.unhealthy_since = None
                    restored += 1
                    logger.info(f"🔄 [POOL] Connection {conn.id} passed health check, restored")
                    self._wake(conn.role)
                else:
                    failed += 1
                    conn.unhealthy_since = self._clock()
                continue

            checked += 1
            if await self._probe(conn):
                conn.consecutive_failures = 0
            else:
                failed += 1
                self.record_failure(conn)

        self.metrics["health_checks"] += checked
        self.metrics["health_failures"] += failed
        return {"checked": checked, "failed": failed, "restored": restored}

    async def _probe(self, conn: PooledConnection) -> bool:
        if self.health_probe is None:
            return True
        try:
            return bool(await self.health_probe(conn))
        except Exception as e:
            logger.debug(f"[POOL] Health probe error for {conn.id}: {e}")
            return False

    async def reap_idle(self) -> int:
        """Destroy idle connections unused past idle_timeout, keeping min_connections per role."""
        now = self._clock()
        reaped = 0
        for conn in list(self._connections.values()):
            if conn.in_use or conn.id not in self._connections:
                continue
            if (now - conn.last_used_at) * 1000 < self.idle_timeout_ms:
                continue
            if self.count(conn.role) <= self.min_connections:
                continue
            await self._destroy(conn)
            reaped += 1
            self._wake(conn.role)
        if reaped:
            logger.info(f"🧹 [POOL] Reaped {reaped} idle connections")
        return reaped

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def count(self, role: ConnectionRole) -> int:
        """Live plus pending connections for a role (unhealthy ones included)."""
        live = sum(1 for c in self._connections.values() if c.role == role)
        return live + self._pending_creations[role]

    def connections(self, role: Optional[ConnectionRole] = None) -> List[PooledConnection]:
        return [c for c in self._connections.values() if role is None or c.role == role]

    def waiting(self, role: ConnectionRole) -> int:
        return sum(1 for w in self._waiters[role] if not w.done())

    def get_stats(self) -> Dict[str, Any]:
        roles = {}
        for role in ConnectionRole:
            conns = self.connections(role)
            in_use = sum(1 for c in conns if c.in_use)
            roles[role.value] = {
                "total": len(conns),
                "in_use": in_use,
                "idle": len(conns) - in_use,
                "unhealthy": sum(1 for c in conns if not c.healthy),
                "waiting": self.waiting(role),
                "max": self.max_connections,
                "utilization_percent": round(in_use / self.max_connections * 100, 1),
            }
        acquired = self.metrics["acquired_total"]
        return {
            "closed": self._closed,
            "roles": roles,
            **{k: v for k, v in self.metrics.items() if k != "total_acquire_time_ms"},
            "avg_acquire_time_ms": round(self.metrics["total_acquire_time_ms"] / acquired, 3) if acquired else 0.0,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _select(self, role: ConnectionRole, region: str) -> Optional[PooledConnection]:
        fallback = None
        for conn in self._connections.values():
            if conn.role != role or conn.in_use or not conn.healthy:
                continue
            if conn.region == region:
                return conn
            if fallback is None:
                fallback = conn
        return fallback

    def _checkout(self, conn: PooledConnection, started: float) -> PooledConnection:
        conn.in_use = True
        conn.uses += 1
        conn.last_used_at = self._clock()
        elapsed_ms = (asyncio.get_running_loop().time() - started) * 1000
        self.metrics["acquired_total"] += 1
        self.metrics["total_acquire_time_ms"] += elapsed_ms
        if elapsed_ms > 1000:
            logger.warning(f"🐌 [POOL] Slow {conn.role.value} acquisition: {elapsed_ms:.0f}ms")
        return conn

    async def _create(self, role: ConnectionRole, region: str) -> PooledConnection:
        conn_id = f"{role.value}-{uuid.uuid4().hex[:12]}"
        self._pending_creations[role] += 1
        try:
            client = self.client_factory(role, region, conn_id)
            if inspect.isawaitable(client):
                client = await client
        finally:
            self._pending_creations[role] -= 1

        now = self._clock()
        conn = PooledConnection(
            id=conn_id, role=role, region=region, client=client,
            created_at=now, last_used_at=now,
        )
        self._connections[conn_id] = conn
        self.metrics["created_total"] += 1
        logger.debug(f"[POOL] Created {role.value} connection {conn_id} in region {region}")
        return conn

    async def _destroy(self, conn: PooledConnection) -> None:
        self._connections.pop(conn.id, None)
        self.metrics["destroyed_total"] += 1
        close = getattr(conn.client, "aclose", None) or getattr(conn.client, "close", None)
        if close is None:
            return
        try:
            result = close()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"❌ [POOL] Error closing connection {conn.id}: {e}")

    def _next_waiter(self, role: ConnectionRole) -> Optional[asyncio.Future]:
        waiters = self._waiters[role]
        while waiters:
            waiter = waiters.popleft()
            if not waiter.done():
                return waiter
        return None

    def _wake(self, role: ConnectionRole) -> None:
        waiter = self._next_waiter(role)
        if waiter is not None:
            waiter.set_result(None)

    def _exhausted(self, role: ConnectionRole, timeout_ms: float) -> PoolExhaustedError:
        self.metrics["exhaustion_events"] += 1
        logger.warning(f"⚠️ [POOL] {role.value} pool exhausted after {timeout_ms:.0f}ms wait")
        return PoolExhaustedError(role.value, timeout_ms, self.max_connections)
