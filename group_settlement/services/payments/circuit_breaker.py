"""
Circuit breaker for payment provider calls.

States:
1. CLOSED: normal operation, charges pass through
2. OPEN: after failures exceed the threshold, charges fail fast
3. HALF_OPEN: after the timeout, a few trial charges test recovery

The breaker is thread-safe: request workers charge concurrently.

Usage:
    breaker = CircuitBreaker(CircuitBreakerConfig.from_settings("card-gateway"))

    with breaker.call():
        result = gateway.charge(participant_id, amount_cents, method)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from shared.config.logging import get_logger
from shared.config.settings import Settings, settings as default_settings

logger = get_logger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Configuration for a circuit breaker instance."""
    name: str
    failure_threshold: int = 5       # Failures before opening
    success_threshold: int = 2       # Successes in half-open before closing
    timeout_seconds: float = 30.0    # Time before trying half-open
    half_open_max_calls: int = 2     # Max concurrent calls in half-open

    @classmethod
    def from_settings(cls, name: str, config: Settings | None = None) -> "CircuitBreakerConfig":
        config = config or default_settings
        return cls(
            name=name,
            failure_threshold=config.payment_breaker_failure_threshold,
            success_threshold=config.payment_breaker_success_threshold,
            timeout_seconds=config.payment_breaker_timeout_seconds,
        )


@dataclass
class CircuitBreakerStats:
    """Statistics for monitoring circuit breaker behavior."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    last_failure_time: float | None = None


class CircuitBreakerError(Exception):
    """Raised when the circuit is open and the call is rejected."""
    def __init__(self, breaker_name: str, retry_after: float):
        self.breaker_name = breaker_name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{breaker_name}' is open. Retry after {retry_after:.1f}s")


class CircuitBreaker:
    """Circuit breaker guarding a synchronous external call."""

    def __init__(self, config: CircuitBreakerConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None
        self._half_open_calls = 0
        self._lock = threading.Lock()
        self._stats = CircuitBreakerStats()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        return self._stats

    def _transition_to(self, new_state: CircuitState) -> None:
        # Caller holds self._lock
        old_state = self._state
        self._state = new_state
        self._stats.state_changes += 1

        logger.info(
            "Circuit breaker state change",
            breaker=self.config.name,
            old_state=old_state.value,
            new_state=new_state.value,
            failure_count=self._failure_count,
        )

        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
            self._half_open_calls = 0

    def _acquire_attempt(self) -> tuple[bool, float]:
        """Returns (can_attempt, retry_after_seconds)."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True, 0.0

            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._last_failure_time or 0.0)
                if elapsed < self.config.timeout_seconds:
                    return False, self.config.timeout_seconds - elapsed
                self._transition_to(CircuitState.HALF_OPEN)

            if self._half_open_calls < self.config.half_open_max_calls:
                self._half_open_calls += 1
                return True, 0.0
            return False, 1.0

    def record_success(self) -> None:
        with self._lock:
            self._stats.total_calls += 1
            self._stats.successful_calls += 1

            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                self._half_open_calls = max(0, self._half_open_calls - 1)
                if self._success_count >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            now = self._clock()
            self._stats.total_calls += 1
            self._stats.failed_calls += 1
            self._stats.last_failure_time = now
            self._last_failure_time = now
            self._failure_count += 1

            if error is not None:
                logger.warning(
                    "Circuit breaker recorded failure",
                    breaker=self.config.name,
                    error=str(error),
                    failure_count=self._failure_count,
                    threshold=self.config.failure_threshold,
                )

            if self._state == CircuitState.HALF_OPEN:
                self._half_open_calls = max(0, self._half_open_calls - 1)
                self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    @contextmanager
    def call(self) -> Iterator[None]:
        """
        Context manager for a protected call.

        Raises:
            CircuitBreakerError: If the circuit is open.
        """
        can_attempt, retry_after = self._acquire_attempt()
        if not can_attempt:
            with self._lock:
                self._stats.rejected_calls += 1
            raise CircuitBreakerError(self.config.name, retry_after)

        try:
            yield
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()

    def reset(self) -> None:
        """Manually reset the circuit breaker to closed state."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._half_open_calls = 0
        logger.info("Circuit breaker manually reset", breaker=self.config.name)

    def snapshot(self) -> dict[str, object]:
        """State and counters for health checks."""
        return {
            "state": self._state.value,
            "total_calls": self._stats.total_calls,
            "successful_calls": self._stats.successful_calls,
            "failed_calls": self._stats.failed_calls,
            "rejected_calls": self._stats.rejected_calls,
            "state_changes": self._stats.state_changes,
        }
