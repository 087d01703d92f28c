"""
Circuit breaker for backend calls.
Consecutive transport failures open the circuit; callers then fail fast until a
trial call after the reset timeout succeeds.
"""
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from utils.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Requests fail fast
    HALF_OPEN = "half_open"  # One trial request decides


class CircuitBreaker:
    """Closed/open/half-open breaker driven by consecutive failures."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout_ms: float = 60_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._clock = clock

        self.state = CircuitBreakerState.CLOSED
        self.consecutive_failures = 0
        self.opened_at: Optional[float] = None
        self._trial_in_flight = False
        self.metrics = {
            "trips": 0,
            "rejected_calls": 0,
        }

    def _remaining_ms(self) -> float:
        if self.opened_at is None:
            return 0.0
        return max(0.0, self.reset_timeout_ms - (self._clock() - self.opened_at) * 1000)

    def before_call(self) -> None:
        """Admit a call or raise CircuitOpenError."""
        if self.state == CircuitBreakerState.OPEN:
            if self._remaining_ms() > 0:
                self.metrics["rejected_calls"] += 1
                raise CircuitOpenError(self._remaining_ms())
            self.state = CircuitBreakerState.HALF_OPEN
            logger.info("🔄 [CIRCUIT] Reset timeout elapsed, entering half-open state")

        if self.state == CircuitBreakerState.HALF_OPEN:
            if self._trial_in_flight:
                self.metrics["rejected_calls"] += 1
                raise CircuitOpenError(0.0)
            self._trial_in_flight = True

    def record_success(self) -> None:
        if self.state != CircuitBreakerState.CLOSED:
            logger.info("✅ [CIRCUIT] Trial call succeeded, circuit closed")
        self.state = CircuitBreakerState.CLOSED
        self.consecutive_failures = 0
        self.opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        if self.state == CircuitBreakerState.HALF_OPEN or self.consecutive_failures >= self.failure_threshold:
            self._trip()

    def record_neutral(self) -> None:
        """A call ended with an error that says nothing about backend health."""
        self._trial_in_flight = False

    def _trip(self) -> None:
        if self.state != CircuitBreakerState.OPEN:
            self.metrics["trips"] += 1
            logger.warning(
                f"🚨 [CIRCUIT] Opened after {self.consecutive_failures} consecutive failures, "
                f"failing fast for {self.reset_timeout_ms:.0f}ms"
            )
        self.state = CircuitBreakerState.OPEN
        self.opened_at = self._clock()
        self._trial_in_flight = False

    def reset(self) -> None:
        self.record_success()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "retry_after_ms": round(self._remaining_ms(), 1) if self.state == CircuitBreakerState.OPEN else 0.0,
            **self.metrics,
        }
