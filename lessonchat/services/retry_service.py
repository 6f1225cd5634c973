"""
Retry service with exponential backoff and circuit breaker patterns
"""

import time
import asyncio
import logging
from typing import Awaitable, Callable, Any, Optional, Dict
from functools import wraps
from enum import Enum

logger = logging.getLogger(__name__)

class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing fast
    HALF_OPEN = "half_open"  # One trial call allowed

class CircuitOpenError(RuntimeError):
    """Raised while the circuit is open"""
    pass

def _always_retry(error: Exception) -> bool:
    return True


class CircuitBreaker:
    """
    Stops calling a failing dependency for ``reset_timeout`` seconds after
    ``failure_threshold`` consecutive failures. The first call after the
    timeout is a trial: success closes the circuit, failure reopens it.
    """

    def __init__(self, name: str = "circuit", failure_threshold: int = 5, reset_timeout: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None

    def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == CircuitState.OPEN:
            if self._clock() - self.opened_at < self.reset_timeout:
                raise CircuitOpenError(f"{self.name} circuit is open")
            self.state = CircuitState.HALF_OPEN

        try:
            result = func(*args, **kwargs)
        except Exception:
            self._record_failure()
            raise

        if self.state != CircuitState.CLOSED:
            logger.info(f"{self.name} circuit closed")
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = None
        return result

    def _record_failure(self):
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
            self.opened_at = self._clock()
            logger.error(f"{self.name} circuit opened after {self.failure_count} failures")

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "reset_timeout": self.reset_timeout,
        }


class RetryService:
    """
    Retries with exponential backoff.

    ``max_attempts`` counts the first call, so 3 means one call and two
    retries. The delay before retry ``n`` (0-based) is
    ``min(base_delay * 2 ** n, max_delay)``.
    """

    def __init__(self, max_attempts: int = 3, base_delay: float = 1.0, max_delay: float = 60.0,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep or asyncio.sleep

    def compute_delay(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt ``attempt`` (0-based)"""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def _should_give_up(self, name: str, attempt: int, error: Exception,
                        is_retriable: Callable[[Exception], bool]) -> bool:
        if not is_retriable(error):
            logger.warning(f"{name} failed with non-retriable error: {error}")
            return True
        if attempt == self.max_attempts - 1:
            logger.error(f"{name} failed after {self.max_attempts} attempts: {error}")
            return True
        logger.warning(
            f"{name} failed (attempt {attempt + 1}/{self.max_attempts}), "
            f"retrying in {self.compute_delay(attempt)}s: {error}"
        )
        return False

    async def retry_async(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        is_retriable: Callable[[Exception], bool] = _always_retry,
        **kwargs,
    ) -> Any:
        """
        Await ``func`` until it succeeds, a non-retriable error is raised,
        or ``max_attempts`` is used up.

        Raises:
            Exception: Last exception if all attempts fail
        """
        name = getattr(func, "__name__", repr(func))

        for attempt in range(self.max_attempts):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if self._should_give_up(name, attempt, e, is_retriable):
                    raise
                await self._sleep(self.compute_delay(attempt))

    def retry_sync(
        self,
        func: Callable,
        *args,
        is_retriable: Callable[[Exception], bool] = _always_retry,
        **kwargs,
    ) -> Any:
        """Blocking counterpart of ``retry_async`` for synchronous clients"""
        name = getattr(func, "__name__", repr(func))

        for attempt in range(self.max_attempts):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if self._should_give_up(name, attempt, e, is_retriable):
                    raise
                time.sleep(self.compute_delay(attempt))


def retry_with_backoff(max_attempts: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
    """
    Decorator for retry with exponential backoff. An open circuit is never retried.

    Args:
        max_attempts: Total number of calls, including the first
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds
    """
    service = RetryService(max_attempts, base_delay, max_delay)

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return service.retry_sync(
                func, *args,
                is_retriable=lambda e: not isinstance(e, CircuitOpenError),
                **kwargs,
            )
        return wrapper
    return decorator

def circuit_breaker(failure_threshold: int = 5, timeout: float = 60.0):
    """
    Decorator guarding a function with its own CircuitBreaker, exposed as ``wrapper.circuit``

    Args:
        failure_threshold: Number of consecutive failures before opening the circuit
        timeout: Seconds before a trial call is let through
    """
    def decorator(func: Callable) -> Callable:
        breaker = CircuitBreaker(func.__name__, failure_threshold, timeout)

        @wraps(func)
        def wrapper(*args, **kwargs):
            return breaker.call(func, *args, **kwargs)
        wrapper.circuit = breaker
        return wrapper
    return decorator
