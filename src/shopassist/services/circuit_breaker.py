"""
Circuit breaker guarding the language-model endpoint.

CLOSED passes calls through and counts consecutive failures. Crossing the
failure threshold opens the circuit; while OPEN every call is rejected with
`CircuitOpen` without touching the endpoint. Once the cooldown has elapsed
the breaker moves to HALF_OPEN and lets exactly one trial call through:
success closes the circuit, failure re-opens it with a fresh cooldown.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from ..errors import CircuitOpen

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior"""
    failure_threshold: int = 5
    cooldown_seconds: float = 30.0

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.cooldown_seconds <= 0:
            raise ValueError("cooldown_seconds must be > 0")


@dataclass
class CircuitBreakerStats:
    """Runtime statistics for circuit breaker"""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    state_changes: int = 0


class CircuitBreaker:
    """Async circuit breaker with a single half-open trial call."""

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.stats = CircuitBreakerStats()
        self._state = CircuitState.CLOSED
        self._trial_in_flight = False
        self._clock = clock
        self._lock = Lock()

        logger.info(f"CircuitBreaker '{name}' initialized: {self.config}")

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh_state()
            return self._state

    @property
    def consecutive_failures(self) -> int:
        return self.stats.consecutive_failures

    @property
    def is_healthy(self) -> bool:
        return self.state != CircuitState.OPEN

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Execute `fn` with circuit breaker protection.

        Raises:
            CircuitOpen: If the circuit is open, or a half-open trial is already running.
            Exception: Whatever `fn` raised, after the failure is recorded.
        """
        is_trial = self._acquire()
        try:
            result = await fn()
        except asyncio.CancelledError:
            if is_trial:
                with self._lock:
                    self._trial_in_flight = False
            raise
        except Exception as e:
            self._record_failure(is_trial)
            logger.warning(f"CircuitBreaker '{self.name}': failure - {e}")
            raise
        self._record_success(is_trial)
        return result

    def _acquire(self) -> bool:
        """Admit a call or raise CircuitOpen. Returns True if the call is the half-open trial."""
        with self._lock:
            self._refresh_state()
            if self._state == CircuitState.CLOSED:
                self.stats.total_calls += 1
                return False
            if self._state == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                self.stats.total_calls += 1
                return True
            self.stats.rejected_calls += 1
        raise CircuitOpen(f"Circuit breaker '{self.name}' is {self._state.value}")

    def _refresh_state(self) -> None:
        """Move OPEN to HALF_OPEN once the cooldown has elapsed. Caller holds the lock."""
        if self._state != CircuitState.OPEN or self.stats.opened_at is None:
            return
        if self._clock() - self.stats.opened_at >= self.config.cooldown_seconds:
            self._transition(CircuitState.HALF_OPEN)

    def _record_success(self, is_trial: bool) -> None:
        with self._lock:
            self.stats.successful_calls += 1
            self.stats.consecutive_failures = 0
            if is_trial:
                self._trial_in_flight = False
                self.stats.opened_at = None
                self._transition(CircuitState.CLOSED)

    def _record_failure(self, is_trial: bool) -> None:
        with self._lock:
            self.stats.failed_calls += 1
            self.stats.consecutive_failures += 1
            if is_trial:
                self._trial_in_flight = False
                self._open()
            elif (
                self._state == CircuitState.CLOSED
                and self.stats.consecutive_failures >= self.config.failure_threshold
            ):
                self._open()

    def _open(self) -> None:
        self.stats.opened_at = self._clock()
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self.stats.state_changes += 1
        logger.info(f"CircuitBreaker '{self.name}': {old_state.value} → {new_state.value}")

    def reset(self):
        """Manually reset circuit breaker to CLOSED state"""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._trial_in_flight = False
            self.stats = CircuitBreakerStats()
            logger.info(f"CircuitBreaker '{self.name}': manually reset")

    def get_stats(self) -> Dict[str, Any]:
        """Get current statistics"""
        state = self.state
        return {
            "name": self.name,
            "state": state.value,
            "isHealthy": state != CircuitState.OPEN,
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "cooldown_seconds": self.config.cooldown_seconds,
            },
            "stats": {
                "total_calls": self.stats.total_calls,
                "successful_calls": self.stats.successful_calls,
                "failed_calls": self.stats.failed_calls,
                "rejected_calls": self.stats.rejected_calls,
                "consecutive_failures": self.stats.consecutive_failures,
                "opened_at": self.stats.opened_at,
                "state_changes": self.stats.state_changes,
            },
        }
