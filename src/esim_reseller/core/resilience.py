"""Resilience patterns: circuit breaker and bounded polling."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from esim_reseller.config import settings
from esim_reseller.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


# Exceptions that should trigger retry
RETRYABLE_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


async def poll_until(
    fetch: Callable[[], Awaitable[T | None]],
    *,
    max_attempts: int,
    interval: float,
    name: str = "poll",
) -> T | None:
    """Call ``fetch`` until it returns a value, at most ``max_attempts`` times.

    Returns the first non-None result, or None once attempts are exhausted.
    Never raises on exhaustion; the caller decides what "not ready" means.
    """

    def _log_wait(retry_state: RetryCallState) -> None:
        logger.info(
            "poll_waiting",
            name=name,
            attempt=retry_state.attempt_number,
            max_attempts=max_attempts,
        )

    def _give_up(retry_state: RetryCallState) -> None:
        logger.warning("poll_exhausted", name=name, attempts=retry_state.attempt_number)
        return None

    result: T | None = None
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda value: value is None),
        before_sleep=_log_wait,
        retry_error_callback=_give_up,
    ):
        with attempt:
            result = await fetch()
        # the attempt manager only records success, not the value
        if not attempt.retry_state.outcome.failed:
            attempt.retry_state.set_result(result)
    return result


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if supplier recovered


@dataclass
class CircuitBreaker:
    """Per-supplier circuit breaker.

    Opens after ``threshold`` consecutive failures and lets a single trial call
    through once ``timeout`` seconds have passed.
    """

    name: str
    threshold: int = field(default_factory=lambda: settings.circuit_breaker_threshold)
    timeout: float = field(default_factory=lambda: settings.circuit_breaker_timeout)

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failures: int = field(default=0, init=False)
    _last_failure_time: float = field(default=0.0, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    @property
    def state(self) -> CircuitState:
        """Get current circuit state, handling timeout transition."""
        if self._state == CircuitState.OPEN:
            if time.time() - self._last_failure_time >= self.timeout:
                return CircuitState.HALF_OPEN
        return self._state

    async def record_success(self) -> None:
        """Record a successful call."""
        async with self._lock:
            if self._state in (CircuitState.HALF_OPEN, CircuitState.OPEN):
                logger.info(
                    "circuit_breaker_closed",
                    name=self.name,
                    previous_state=self._state.value,
                )
            self._failures = 0
            self._state = CircuitState.CLOSED

    async def record_failure(self, error: Exception) -> None:
        """Record a failed call."""
        async with self._lock:
            self._failures += 1
            self._last_failure_time = time.time()

            if self._failures >= self.threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning(
                        "circuit_breaker_opened",
                        name=self.name,
                        failures=self._failures,
                        threshold=self.threshold,
                        error=str(error),
                    )
                self._state = CircuitState.OPEN

    async def can_execute(self) -> bool:
        """Check if a request can be executed."""
        return self.state != CircuitState.OPEN


# Supplier-specific circuit breakers
_circuit_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(supplier: str) -> CircuitBreaker:
    """Get or create a circuit breaker for a supplier."""
    if supplier not in _circuit_breakers:
        _circuit_breakers[supplier] = CircuitBreaker(name=supplier)
    return _circuit_breakers[supplier]


def reset_circuit_breakers() -> None:
    """Reset all circuit breakers (useful for testing)."""
    _circuit_breakers.clear()


def describe_breakers() -> dict[str, Any]:
    """Snapshot of breaker states for the health endpoint."""
    return {name: cb.state.value for name, cb in _circuit_breakers.items()}
