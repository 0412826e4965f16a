"""Circuit breaker for lease store calls."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from leasegate.errors import BackendUnavailable
from leasegate.utils.time import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation, calls pass through
    OPEN = "open"  # Backend presumed down, calls fail fast
    HALF_OPEN = "half_open"  # Testing if backend recovered


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration."""

    failure_threshold: int = 5  # Failures before opening
    timeout_seconds: int = 30  # Time before attempting half-open
    half_open_max_calls: int = 3  # Test calls in half-open state
    success_threshold: int = 2  # Successes to close from half-open


@dataclass
class CircuitBreakerStats:
    """Circuit breaker statistics."""

    state: CircuitState
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    half_open_calls: int = 0
    total_calls: int = 0
    total_failures: int = 0


class CircuitBreakerOpen(BackendUnavailable):
    """Raised when the circuit is open and calls are rejected."""

    def __init__(self, service_name: str, retry_after: int):
        super().__init__(
            service_name,
            f"circuit breaker open, retry after {retry_after}s",
            "CIRCUIT_OPEN",
        )
        self.service_name = service_name
        self.retry_after = retry_after


class CircuitBreaker:
    """
    Circuit breaker around backend calls.

    State transitions:
    - CLOSED → OPEN: After failure_threshold consecutive failures
    - OPEN → HALF_OPEN: After timeout_seconds elapsed
    - HALF_OPEN → CLOSED: After success_threshold consecutive successes
    - HALF_OPEN → OPEN: On any failure

    Only exceptions listed in ``trip_on`` count as failures; everything else
    propagates without touching the counters.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig,
        trip_on: tuple[type[BaseException], ...] = (Exception,),
    ):
        self.name = name
        self.config = config
        self.trip_on = trip_on
        self._state = CircuitState.CLOSED
        self._stats = CircuitBreakerStats(state=self._state)
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            state=self._state,
            failure_count=self._stats.failure_count,
            success_count=self._stats.success_count,
            last_failure_time=self._stats.last_failure_time,
            opened_at=self._stats.opened_at,
            half_open_calls=self._stats.half_open_calls,
            total_calls=self._stats.total_calls,
            total_failures=self._stats.total_failures,
        )

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Execute an async function through the circuit breaker.

        Raises:
            CircuitBreakerOpen: If circuit is open
            Exception: Any exception from func (after recording)
        """
        async with self._lock:
            self._stats.total_calls += 1

            if self._state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self._transition_to_half_open()
                else:
                    raise CircuitBreakerOpen(self.name, self._seconds_until_half_open())

            if self._state == CircuitState.HALF_OPEN:
                if self._stats.half_open_calls >= self.config.half_open_max_calls:
                    logger.warning(f"Circuit {self.name} half-open limit reached, rejecting call")
                    raise CircuitBreakerOpen(self.name, self._seconds_until_half_open())
                self._stats.half_open_calls += 1

        # Execute outside the lock
        try:
            result = await func(*args, **kwargs)
        except self.trip_on as e:
            await self._on_failure(e)
            raise
        await self._on_success()
        return result

    async def _on_success(self) -> None:
        async with self._lock:
            self._stats.success_count += 1
            self._stats.failure_count = 0

            if self._state == CircuitState.HALF_OPEN:
                if self._stats.success_count >= self.config.success_threshold:
                    self._transition_to_closed()

    async def _on_failure(self, error: BaseException) -> None:
        async with self._lock:
            self._stats.failure_count += 1
            self._stats.total_failures += 1
            self._stats.success_count = 0
            self._stats.last_failure_time = utc_now()

            logger.warning(
                f"Circuit {self.name} failure ({self._stats.failure_count}/"
                f"{self.config.failure_threshold}): {error}"
            )

            if self._state == CircuitState.HALF_OPEN:
                self._transition_to_open()
            elif self._state == CircuitState.CLOSED:
                if self._stats.failure_count >= self.config.failure_threshold:
                    self._transition_to_open()

    def _transition_to_open(self) -> None:
        self._state = CircuitState.OPEN
        self._stats.opened_at = utc_now()
        self._stats.half_open_calls = 0
        logger.error(f"Circuit {self.name} opened after {self._stats.failure_count} failures")

    def _transition_to_half_open(self) -> None:
        self._state = CircuitState.HALF_OPEN
        self._stats.success_count = 0
        self._stats.failure_count = 0
        self._stats.half_open_calls = 0
        logger.info(f"Circuit {self.name} entering half-open state")

    def _transition_to_closed(self) -> None:
        self._state = CircuitState.CLOSED
        self._stats.failure_count = 0
        self._stats.success_count = 0
        self._stats.opened_at = None
        self._stats.half_open_calls = 0
        logger.info(f"Circuit {self.name} closed after recovery")

    def _should_attempt_reset(self) -> bool:
        if not self._stats.opened_at:
            return False
        elapsed = (utc_now() - self._stats.opened_at).total_seconds()
        return elapsed >= self.config.timeout_seconds

    def _seconds_until_half_open(self) -> int:
        if not self._stats.opened_at:
            return self.config.timeout_seconds
        elapsed = (utc_now() - self._stats.opened_at).total_seconds()
        return int(max(0, self.config.timeout_seconds - elapsed))

    async def reset(self) -> None:
        """Manually reset circuit to CLOSED state."""
        async with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"Circuit {self.name} manually reset")
            self._transition_to_closed()
