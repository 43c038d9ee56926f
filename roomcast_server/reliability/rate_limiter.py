# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# Inbound event rate limiting (one limiter per connection)
# =============================================================================

import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from typing import Any

from .config import RateLimiterConfig

logger = logging.getLogger("roomcast.rate_limiter")


# --------------------------------------------------------------------- #
# Algorithm base
# --------------------------------------------------------------------- #


class RateLimiterAlgorithm(ABC):
    """Base class for rate limiting algorithms."""

    @abstractmethod
    def try_acquire(self, tokens: int = 1) -> bool:
        """Try to take *tokens*.  Return True on success."""


# --------------------------------------------------------------------- #
# Token bucket
# --------------------------------------------------------------------- #


class TokenBucket(RateLimiterAlgorithm):
    """Token bucket algorithm -- allows bursts up to *capacity*."""

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        initial_tokens: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self._tokens = float(capacity if initial_tokens is None else initial_tokens)
        self._last_refill = clock()

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(float(self.capacity), self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    def try_acquire(self, tokens: int = 1) -> bool:
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False


# --------------------------------------------------------------------- #
# Sliding window
# --------------------------------------------------------------------- #


class SlidingWindow(RateLimiterAlgorithm):
    """Sliding window rate limiter."""

    def __init__(
        self,
        capacity: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.capacity = capacity
        self.window_seconds = window_seconds
        self._clock = clock
        self.requests: deque[float] = deque()

    def try_acquire(self, tokens: int = 1) -> bool:
        now = self._clock()
        cutoff = now - self.window_seconds
        while self.requests and self.requests[0] <= cutoff:
            self.requests.popleft()

        if len(self.requests) + tokens > self.capacity:
            return False
        self.requests.extend([now] * tokens)
        return True


# --------------------------------------------------------------------- #
# Main facade
# --------------------------------------------------------------------- #


class RateLimiter:
    """Rate limiter with selectable algorithm (token bucket or sliding window)."""

    def __init__(
        self,
        name: str = "default",
        config: RateLimiterConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or RateLimiterConfig()
        self.rejected = 0

        if self.config.algorithm == "sliding_window" and self.config.time_window:
            self.algorithm: RateLimiterAlgorithm = SlidingWindow(
                capacity=self.config.capacity,
                window_seconds=self.config.time_window,
                clock=clock,
            )
        else:
            self.algorithm = TokenBucket(
                capacity=self.config.capacity,
                refill_rate=self.config.refill_rate,
                initial_tokens=self.config.initial_tokens,
                clock=clock,
            )

    async def acquire(self, tokens: int = 1) -> bool:
        """Try to acquire *tokens*.  Logs a warning on rejection."""
        acquired = self.algorithm.try_acquire(tokens)
        if not acquired:
            self.rejected += 1
            logger.warning(
                "rate_limit_exceeded for %s, requested_tokens=%d",
                self.name,
                tokens,
            )
        return acquired

    def get_status(self) -> dict[str, Any]:
        """Return current rate limiter status."""
        status: dict[str, Any] = {
            "name": self.name,
            "algorithm": self.config.algorithm,
            "capacity": self.config.capacity,
            "rejected": self.rejected,
        }

        if isinstance(self.algorithm, TokenBucket):
            status["available_tokens"] = self.algorithm.tokens
            status["refill_rate"] = self.algorithm.refill_rate
        elif isinstance(self.algorithm, SlidingWindow):
            status["current_requests"] = len(self.algorithm.requests)
            status["window_seconds"] = self.algorithm.window_seconds

        return status
