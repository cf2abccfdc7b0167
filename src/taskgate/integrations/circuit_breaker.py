"""Circuit breaker for external service calls."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from taskgate.observability.metrics import metrics
from taskgate.utils.time import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Calls pass through
    OPEN = "open"  # Calls fail fast
    HALF_OPEN = "half_open"  # Probing for recovery


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration."""

    failure_threshold: int = 5
    timeout_seconds: int = 60
    half_open_max_calls: int = 3
    success_threshold: int = 2

    @classmethod
    def from_settings(cls, settings) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout_seconds=settings.circuit_breaker_timeout_seconds,
            half_open_max_calls=settings.circuit_breaker_half_open_max_calls,
            success_threshold=settings.circuit_breaker_success_threshold,
        )


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

    def as_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "last_failure_time": (
                self.last_failure_time.isoformat() if self.last_failure_time else None
            ),
        }


class CircuitBreakerOpen(Exception):
    """Raised when a call is rejected because the circuit is open."""

    def __init__(self, service_name: str, retry_after: int):
        self.service_name = service_name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker open for {service_name}, retry after {retry_after}s"
        )


class CircuitBreaker:
    """
    Per-service circuit breaker.

    State transitions:
    - CLOSED -> OPEN: after failure_threshold consecutive failures
    - OPEN -> HALF_OPEN: after timeout_seconds
    - HALF_OPEN -> CLOSED: after success_threshold consecutive successes
    - HALF_OPEN -> OPEN: on any failure
    """

    def __init__(self, name: str, config: CircuitBreakerConfig):
        self.name = name
        self.config = config
        self._state = CircuitState.CLOSED
        self._stats = CircuitBreakerStats(state=self._state)
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        """Snapshot of current statistics."""
        return CircuitBreakerStats(
            state=self._state,
            failure_count=self._stats.failure_count,
            success_count=self._stats.success_count,
            last_failure_time=self._stats.last_failure_time,
            opened_at=self._stats.opened_at,
            half_open_calls=self._stats.half_open_calls,
            total_calls=self._stats.total_calls,
            total_failures=self._stats.total_failures,
            total_successes=self._stats.total_successes,
        )

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run an async call through the breaker.

        Raises CircuitBreakerOpen without calling func when the circuit is
        open or the half-open trial call budget is spent.
        """
        await self._admit()
        try:
            result = await func(*args, **kwargs)
        except Exception as exc:
            await self._on_failure(exc)
            raise
        await self._on_success()
        return result

    async def _admit(self) -> None:
        async with self._lock:
            self._stats.total_calls += 1

            if self._state == CircuitState.OPEN:
                if not self._should_attempt_reset():
                    metrics.inc_counter(f"circuit.{self.name}.rejected")
                    raise CircuitBreakerOpen(self.name, self._seconds_until_half_open())
                self._transition_to(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._stats.half_open_calls >= self.config.half_open_max_calls:
                    metrics.inc_counter(f"circuit.{self.name}.rejected")
                    raise CircuitBreakerOpen(self.name, self._seconds_until_half_open())
                self._stats.half_open_calls += 1

    async def _on_success(self) -> None:
        async with self._lock:
            self._stats.success_count += 1
            self._stats.total_successes += 1
            self._stats.failure_count = 0

            if (
                self._state == CircuitState.HALF_OPEN
                and self._stats.success_count >= self.config.success_threshold
            ):
                self._transition_to(CircuitState.CLOSED)

    async def _on_failure(self, error: Exception) -> None:
        async with self._lock:
            self._stats.failure_count += 1
            self._stats.total_failures += 1
            self._stats.success_count = 0
            self._stats.last_failure_time = utc_now()

            logger.warning(
                "Circuit %s failure (%d/%d): %s",
                self.name,
                self._stats.failure_count,
                self.config.failure_threshold,
                error,
            )

            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
            elif (
                self._state == CircuitState.CLOSED
                and self._stats.failure_count >= self.config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    def _transition_to(self, state: CircuitState) -> None:
        self._state = state
        self._stats.half_open_calls = 0
        if state == CircuitState.OPEN:
            self._stats.opened_at = utc_now()
            logger.error("Circuit %s opened", self.name)
        elif state == CircuitState.HALF_OPEN:
            self._stats.success_count = 0
            self._stats.failure_count = 0
            logger.info("Circuit %s half-open", self.name)
        else:
            self._stats.failure_count = 0
            self._stats.success_count = 0
            self._stats.opened_at = None
            logger.info("Circuit %s closed", self.name)
        metrics.inc_counter(f"circuit.{self.name}.{state.value}")

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
        """Manually close the circuit."""
        async with self._lock:
            self._transition_to(CircuitState.CLOSED)
