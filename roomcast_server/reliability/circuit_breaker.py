# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum, auto
from typing import Any, Generic, TypeVar

from .config import CircuitBreakerConfig

logger = logging.getLogger("roomcast.circuit_breaker")

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = auto()
    OPEN = auto()
    HALF_OPEN = auto()


class CircuitBreakerOpenError(Exception):
    """Raised when the circuit breaker is OPEN and rejects a call."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class CircuitBreaker(Generic[T]):
    """Circuit breaker around calls to an external collaborator.

    State machine: CLOSED -> OPEN -> HALF_OPEN -> CLOSED.

    * **CLOSED** -- calls pass through; consecutive failures are counted.
    * **OPEN** -- calls are rejected immediately until *reset_timeout_seconds*
      elapses.
    * **HALF_OPEN** -- a limited number of probe calls are let through; enough
      successes close the breaker, any failure re-opens it.

    All state changes happen between awaits on the event loop thread, so no
    lock is taken.
    """

    def __init__(self, config: CircuitBreakerConfig, clock: Callable[[], float] = time.monotonic):
        self.name = config.name
        self.config = config
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: float | None = None
        self._half_open_calls = 0
        self._rejected_calls = 0

        self._call_results: deque[bool] | None = None
        if config.window_size:
            self._call_results = deque(maxlen=config.window_size)

    # --------------------------------------------------------------------- #
    # Public API
    # --------------------------------------------------------------------- #

    @property
    def state(self) -> CircuitState:
        return self._state

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Execute *func* with circuit breaker protection."""
        if not self._can_execute():
            self._rejected_calls += 1
            raise CircuitBreakerOpenError(
                f"Circuit breaker {self.name} is OPEN",
                retry_after=self._retry_after(),
            )

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if self._should_ignore_exception(e):
                self._on_success()
                raise
            self._on_failure(e)
            raise

        self._on_success()
        return result

    def can_execute(self) -> bool:
        return self._can_execute(probe=False)

    def get_metrics(self) -> dict[str, Any]:
        metrics: dict[str, Any] = {
            "name": self.name,
            "state": self._state.name,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "rejected_calls": self._rejected_calls,
        }
        if self._call_results is not None:
            metrics["failure_rate"] = self._failure_rate()
        return metrics

    def reset(self) -> None:
        self._transition_to_closed()

    # --------------------------------------------------------------------- #
    # Internal helpers
    # --------------------------------------------------------------------- #

    def _should_ignore_exception(self, exception: Exception) -> bool:
        ignored = self.config.ignored_exception_types
        return bool(ignored) and isinstance(exception, ignored)

    def _can_execute(self, probe: bool = True) -> bool:
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if self._retry_after() > 0:
                return False
            self._state = CircuitState.HALF_OPEN
            self._half_open_calls = 0
            self._success_count = 0
            logger.info("circuit_breaker_half_open for %s", self.name)

        if self._half_open_calls < self.config.half_open_max_calls:
            if probe:
                self._half_open_calls += 1
            return True
        return False

    def _retry_after(self) -> float:
        if self._opened_at is None:
            return 0.0
        elapsed = self._clock() - self._opened_at
        return max(0.0, self.config.reset_timeout_seconds - elapsed)

    def _on_success(self) -> None:
        if self._call_results is not None:
            self._call_results.append(True)

        self._failure_count = 0
        self._success_count += 1

        if self._state == CircuitState.HALF_OPEN:
            if self._success_count >= self.config.success_threshold:
                self._transition_to_closed()

    def _on_failure(self, error: Exception) -> None:
        if self._call_results is not None:
            self._call_results.append(False)

        self._failure_count += 1
        logger.debug("Circuit breaker %s failure: %s", self.name, error)

        if self._state == CircuitState.HALF_OPEN:
            self._transition_to_open()
            return

        if self._failure_count >= self.config.failure_threshold:
            self._transition_to_open()
        elif (
            self.config.failure_rate_threshold is not None
            and self._call_results is not None
            and len(self._call_results) >= (self.config.window_size or 0)
            and self._failure_rate() >= self.config.failure_rate_threshold
        ):
            self._transition_to_open()

    def _failure_rate(self) -> float:
        if not self._call_results:
            return 0.0
        failures = sum(1 for ok in self._call_results if not ok)
        return failures / len(self._call_results)

    def _transition_to_closed(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._opened_at = None
        logger.info("circuit_breaker_closed for %s", self.name)

    def _transition_to_open(self) -> None:
        self._state = CircuitState.OPEN
        self._success_count = 0
        self._opened_at = self._clock()
        logger.warning("circuit_breaker_opened for %s", self.name)
