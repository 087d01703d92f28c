"""
Request deduplication for identical concurrent backend calls.
Concurrent callers with the same key share one in-flight task; failures are shared, never cached.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class InFlightRequest:
    """Pending request shared by every caller with the same key."""
    key: str
    task: asyncio.Task
    started_at: float
    subscriber_count: int = 0
    abandoned: bool = False


class RequestDeduplicator:
    """Collapses concurrent identical requests into a single underlying call."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._in_flight: Dict[str, InFlightRequest] = {}
        self.stats_counters = {
            "total_requests": 0,
            "unique_requests": 0,
            "deduplicated_requests": 0,
            "cancelled_calls": 0,
        }

    def in_flight(self, key: str) -> Optional[InFlightRequest]:
        return self._in_flight.get(key)

    @property
    def pending_count(self) -> int:
        return len(self._in_flight)

    async def dedupe(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Run `factory` once per key at a time; concurrent callers attach to its result."""
        self.stats_counters["total_requests"] += 1

        while True:
            request = self._in_flight.get(key)
            if request is None or request.task.done():
                request = self._start(key, factory)
                break
            if not request.abandoned:
                self.stats_counters["deduplicated_requests"] += 1
                logger.debug(f"🔗 [DEDUPE] Attached to in-flight request {key[:64]}")
                break
            # A cancelled call may still be unwinding; never run two calls for one key.
            await asyncio.wait([request.task])

        return await self._subscribe(request)

    def _start(self, key: str, factory: Callable[[], Awaitable[T]]) -> InFlightRequest:
        self.stats_counters["unique_requests"] += 1
        task = asyncio.ensure_future(factory())
        request = InFlightRequest(key=key, task=task, started_at=self._clock())
        self._in_flight[key] = request
        task.add_done_callback(lambda t: self._settle(request, t))
        return request

    def _settle(self, request: InFlightRequest, task: asyncio.Task) -> None:
        # Only drop the map entry if it still belongs to this task.
        if self._in_flight.get(request.key) is request:
            del self._in_flight[request.key]
        if not task.cancelled():
            # Mark the exception retrieved; subscribers already received it.
            task.exception()

    async def _subscribe(self, request: InFlightRequest) -> Any:
        request.subscriber_count += 1
        try:
            return await asyncio.shield(request.task)
        except asyncio.CancelledError:
            if request.task.done():
                raise
            # Caller aborted its wait; cancel the shared call once nobody is left.
            if request.subscriber_count - 1 == 0:
                self.stats_counters["cancelled_calls"] += 1
                logger.debug(f"🛑 [DEDUPE] Last subscriber left, cancelling {request.key[:64]}")
                request.abandoned = True
                request.task.cancel()
            raise
        finally:
            request.subscriber_count -= 1

    def stats(self) -> Dict[str, Any]:
        total = self.stats_counters["total_requests"]
        return {
            **self.stats_counters,
            "in_flight": len(self._in_flight),
            "dedup_rate": round(self.stats_counters["deduplicated_requests"] / total, 4) if total else 0.0,
        }
