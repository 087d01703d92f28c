"""
Periodic background task scheduler.
Owns cache sweeps, pool health checks and metric pruning so shutdown is deterministic.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)

TaskFn = Callable[[], Union[Awaitable[Any], Any]]


@dataclass
class PeriodicTask:
    """A named function run every `interval_ms` until the scheduler stops."""
    name: str
    interval_ms: int
    fn: TaskFn
    runs: int = 0
    failures: int = 0
    last_error: Optional[str] = None
    handle: Optional[asyncio.Task] = field(default=None, repr=False)


class PeriodicTaskScheduler:
    """Runs registered periodic tasks with a shared cancellation token."""

    def __init__(self):
        self._tasks: Dict[str, PeriodicTask] = {}
        self._stopping = asyncio.Event()
        self._started = False

    @property
    def running(self) -> bool:
        return self._started and not self._stopping.is_set()

    def add(self, name: str, interval_ms: int, fn: TaskFn) -> PeriodicTask:
        if name in self._tasks:
            raise ValueError(f"Periodic task '{name}' already registered")
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        task = PeriodicTask(name=name, interval_ms=interval_ms, fn=fn)
        self._tasks[name] = task
        if self.running:
            self._launch(task)
        return task

    def start(self) -> None:
        """Start every registered task. Requires a running event loop."""
        if self._started:
            return
        self._started = True
        for task in self._tasks.values():
            self._launch(task)
        logger.info(f"⏱️ [SCHEDULER] Started {len(self._tasks)} periodic tasks")

    def _launch(self, task: PeriodicTask) -> None:
        task.handle = asyncio.create_task(self._loop(task), name=f"periodic:{task.name}")

    async def _loop(self, task: PeriodicTask) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=task.interval_ms / 1000)
                break
            except asyncio.TimeoutError:
                pass
            await self._run(task)

    async def _run(self, task: PeriodicTask) -> None:
        try:
            result = task.fn()
            if inspect.isawaitable(result):
                await result
            task.runs += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            task.failures += 1
            task.last_error = str(e)
            logger.error(f"❌ [SCHEDULER] Periodic task '{task.name}' failed: {e}")

    async def run_now(self, name: str) -> None:
        """Run a task immediately, outside its schedule."""
        await self._run(self._tasks[name])

    async def shutdown(self) -> None:
        """Set the cancellation token, then cancel and await every task."""
        self._stopping.set()
        handles = [t.handle for t in self._tasks.values() if t.handle is not None]
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
        for task in self._tasks.values():
            task.handle = None
        if self._started:
            logger.info("⏹️ [SCHEDULER] All periodic tasks stopped")

    def get_stats(self) -> Dict[str, Any]:
        return {
            name: {
                "interval_ms": t.interval_ms,
                "runs": t.runs,
                "failures": t.failures,
                "last_error": t.last_error,
                "active": t.handle is not None and not t.handle.done(),
            }
            for name, t in self._tasks.items()
        }
