"""
Shared retry policy for outbound backend calls.
One object owns max attempts, jittered exponential backoff, the retryable-error
predicate and the circuit breaker.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from utils.circuit_breaker import CircuitBreaker
from utils.exceptions import CircuitOpenError, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transport_error(error: BaseException) -> bool:
    """Default predicate: only transport failures are worth retrying."""
    return isinstance(error, TransportError) and not isinstance(error, CircuitOpenError)


class RetryPolicy:
    """Exponential backoff retry wrapper built on tenacity."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay_ms: float = 200,
        max_delay_ms: float = 5000,
        multiplier: float = 2.0,
        jitter_ms: float = 100,
        retry_on: Callable[[BaseException], bool] = is_transport_error,
        circuit_breaker: Optional[CircuitBreaker] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max_delay_ms
        self.multiplier = multiplier
        self.jitter_ms = jitter_ms
        self.retry_on = retry_on
        self.circuit_breaker = circuit_breaker
        self._sleep = sleep or asyncio.sleep

        self.total_calls = 0
        self.total_retries = 0
        self.total_failures = 0

    @classmethod
    def from_settings(cls, settings, clock: Optional[Callable[[], float]] = None, **kwargs) -> "RetryPolicy":
        breaker_kwargs = {"clock": clock} if clock is not None else {}
        kwargs.setdefault(
            "circuit_breaker",
            CircuitBreaker(
                failure_threshold=settings.circuit_breaker_threshold,
                reset_timeout_ms=settings.circuit_breaker_reset_ms,
                **breaker_kwargs
            ),
        )
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay_ms=settings.retry_initial_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            jitter_ms=settings.retry_jitter_ms,
            **kwargs
        )

    def backoff_ms(self, attempt: int) -> float:
        """Base delay before retry number `attempt` (1-based), capped at max_delay_ms. Jitter is added on top."""
        delay = self.initial_delay_ms * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_delay_ms)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        self.total_retries += 1
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"🔁 [RETRY] Attempt {retry_state.attempt_number}/{self.max_attempts} failed "
            f"({type(error).__name__}: {error}); retrying in {delay * 1000:.0f}ms"
        )

    def _should_retry(self, error: BaseException) -> bool:
        return not isinstance(error, CircuitOpenError) and self.retry_on(error)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(
                initial=self.initial_delay_ms / 1000,
                max=self.max_delay_ms / 1000,
                exp_base=self.multiplier,
                jitter=self.jitter_ms / 1000,
            ),
            retry=retry_if_exception(self._should_retry),
            before_sleep=self._before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

    async def _attempt(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        breaker = self.circuit_breaker
        if breaker is None:
            return await fn(*args, **kwargs)

        breaker.before_call()
        try:
            result = await fn(*args, **kwargs)
        except asyncio.CancelledError:
            breaker.record_neutral()
            raise
        except Exception as e:
            if self._should_retry(e):
                breaker.record_failure()
            else:
                breaker.record_neutral()
            raise
        breaker.record_success()
        return result

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run `fn` until it succeeds, raises a non-retryable error, or attempts run out."""
        self.total_calls += 1
        try:
            return await self._retrying()(self._attempt, fn, *args, **kwargs)
        except Exception:
            self.total_failures += 1
            raise

    async def call_once(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run a non-idempotent `fn` a single time, still guarded by the circuit breaker."""
        self.total_calls += 1
        try:
            return await self._attempt(fn, *args, **kwargs)
        except Exception:
            self.total_failures += 1
            raise

    def get_stats(self) -> dict:
        stats = {
            "max_attempts": self.max_attempts,
            "total_calls": self.total_calls,
            "total_retries": self.total_retries,
            "total_failures": self.total_failures,
        }
        if self.circuit_breaker is not None:
            stats["circuit_breaker"] = self.circuit_breaker.get_stats()
        return stats
