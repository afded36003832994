"""Circuit breaker guarding calls to the search index."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from flowtrack.observability.metrics import metrics
from flowtrack.utils.time import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # calls pass through
    OPEN = "open"  # calls fail fast
    HALF_OPEN = "half_open"  # probing for recovery


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration."""

    failure_threshold: int = 5
    timeout_seconds: float = 30
    half_open_max_calls: int = 3
    success_threshold: int = 2


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
    total_successes: int = 0


class CircuitBreakerOpen(Exception):
    """Raised instead of calling through while the circuit is open."""

    def __init__(self, service_name: str, retry_after: int):
        self.service_name = service_name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker open for {service_name}, retry after {retry_after}s")


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED -> OPEN after `failure_threshold` consecutive failures.
    OPEN -> HALF_OPEN once `timeout_seconds` have elapsed.
    HALF_OPEN -> CLOSED after `success_threshold` successes; any failure reopens.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._stats = CircuitBreakerStats(state=CircuitState.CLOSED)
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._stats.state

    @property
    def stats(self) -> CircuitBreakerStats:
        """Copy of the current statistics."""
        return CircuitBreakerStats(**vars(self._stats))

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Await `func(*args, **kwargs)` through the breaker.

        Raises:
            CircuitBreakerOpen: circuit open, or half-open probe slots exhausted
            Exception: whatever `func` raised (after recording the failure)
        """
        async with self._lock:
            self._stats.total_calls += 1

            if self._stats.state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self._transition(CircuitState.HALF_OPEN)
                else:
                    raise CircuitBreakerOpen(self.name, self._seconds_until_half_open())

            if self._stats.state == CircuitState.HALF_OPEN:
                if self._stats.half_open_calls >= self.config.half_open_max_calls:
                    raise CircuitBreakerOpen(self.name, self._seconds_until_half_open())
                self._stats.half_open_calls += 1

        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            # A caller timeout cancels the call; a hung index counts as failing
            self._record_failure("call cancelled")
            raise
        except Exception as e:
            await self._on_failure(e)
            raise
        await self._on_success()
        return result

    async def reset(self) -> None:
        """Force the circuit closed."""
        async with self._lock:
            logger.info(f"Circuit {self.name} manually reset")
            self._transition(CircuitState.CLOSED)

    async def _on_success(self) -> None:
        async with self._lock:
            self._stats.success_count += 1
            self._stats.total_successes += 1
            self._stats.failure_count = 0

            if (
                self._stats.state == CircuitState.HALF_OPEN
                and self._stats.success_count >= self.config.success_threshold
            ):
                self._transition(CircuitState.CLOSED)

    async def _on_failure(self, error: Exception) -> None:
        async with self._lock:
            self._record_failure(error)

    def _record_failure(self, error: object) -> None:
        # No awaits: safe to call from a cancelled task without the lock
        self._stats.failure_count += 1
        self._stats.total_failures += 1
        self._stats.success_count = 0
        self._stats.last_failure_time = self._clock()

        logger.warning(
            f"Circuit {self.name} failure ({self._stats.failure_count}/"
            f"{self.config.failure_threshold}): {error}"
        )

        # Reopening from half-open also frees the probe slots
        if self._stats.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif (
            self._stats.state == CircuitState.CLOSED
            and self._stats.failure_count >= self.config.failure_threshold
        ):
            self._transition(CircuitState.OPEN)

    def _transition(self, state: CircuitState) -> None:
        previous = self._stats.state
        self._stats.state = state
        self._stats.half_open_calls = 0
        if state == CircuitState.OPEN:
            self._stats.opened_at = self._clock()
            logger.error(f"Circuit {self.name} opened after {self._stats.failure_count} failures")
        elif state == CircuitState.HALF_OPEN:
            self._stats.success_count = 0
            self._stats.failure_count = 0
            logger.info(f"Circuit {self.name} entering half-open state")
        else:
            self._stats.success_count = 0
            self._stats.failure_count = 0
            self._stats.opened_at = None
            if previous != CircuitState.CLOSED:
                logger.info(f"Circuit {self.name} closed after recovery")
        metrics.inc_counter(f"circuit.{self.name}.{state.value}")

    def _should_attempt_reset(self) -> bool:
        if not self._stats.opened_at:
            return False
        elapsed = (self._clock() - self._stats.opened_at).total_seconds()
        return elapsed >= self.config.timeout_seconds

    def _seconds_until_half_open(self) -> int:
        if not self._stats.opened_at:
            return int(self.config.timeout_seconds)
        elapsed = (self._clock() - self._stats.opened_at).total_seconds()
        return int(max(0, self.config.timeout_seconds - elapsed))
