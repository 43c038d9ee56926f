"""Tests for RoomCast reliability infrastructure (CircuitBreaker + RateLimiter)."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from roomcast_server.core.errors import AccessDenied, ChatError
from roomcast_server.membership.gateway import default_store_breaker_config
from roomcast_server.reliability.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitState,
)
from roomcast_server.reliability.config import CircuitBreakerConfig, RateLimiterConfig
from roomcast_server.reliability.rate_limiter import RateLimiter, SlidingWindow, TokenBucket


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


async def fail():
    raise ConnectionError("boom")


async def ok():
    return "ok"


# =========================================================================
# CircuitBreakerConfig
# =========================================================================


class TestCircuitBreakerConfig:
    def test_default_values(self):
        config = CircuitBreakerConfig(name="test")
        assert config.failure_threshold == 5
        assert config.success_threshold == 2
        assert config.reset_timeout_seconds == 30.0
        assert config.half_open_max_calls == 3
        assert config.window_size is None
        assert config.ignored_exception_types is None

    def test_store_breaker_ignores_domain_errors(self):
        config = default_store_breaker_config()
        assert config.name == "chat_store"
        assert config.ignored_exception_types == (ChatError,)


# =========================================================================
# CircuitBreaker
# =========================================================================


class TestCircuitBreaker:
    def test_initial_state_closed(self):
        cb = CircuitBreaker(CircuitBreakerConfig(name="init"))
        assert cb.state is CircuitState.CLOSED
        assert cb.can_execute() is True

    @pytest.mark.asyncio
    async def test_opens_after_failure_threshold(self):
        cb = CircuitBreaker(CircuitBreakerConfig(name="open_test", failure_threshold=3))
        for _ in range(3):
            with pytest.raises(ConnectionError):
                await cb.call(fail)
        assert cb.state is CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_rejects_when_open(self):
        clock = FakeClock()
        cb = CircuitBreaker(
            CircuitBreakerConfig(name="reject", failure_threshold=1, reset_timeout_seconds=15),
            clock=clock,
        )
        with pytest.raises(ConnectionError):
            await cb.call(fail)

        clock.advance(5)
        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await cb.call(ok)
        assert exc_info.value.retry_after == pytest.approx(10)
        assert cb.get_metrics()["rejected_calls"] == 1

    @pytest.mark.asyncio
    async def test_half_open_to_closed_on_success(self):
        clock = FakeClock()
        cb = CircuitBreaker(
            CircuitBreakerConfig(name="recovery", failure_threshold=1, success_threshold=2, reset_timeout_seconds=15),
            clock=clock,
        )
        with pytest.raises(ConnectionError):
            await cb.call(fail)

        clock.advance(16)
        assert await cb.call(ok) == "ok"
        assert cb.state is CircuitState.HALF_OPEN
        await cb.call(ok)
        assert cb.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        clock = FakeClock()
        cb = CircuitBreaker(
            CircuitBreakerConfig(name="reopen", failure_threshold=1, reset_timeout_seconds=15),
            clock=clock,
        )
        with pytest.raises(ConnectionError):
            await cb.call(fail)
        clock.advance(16)
        with pytest.raises(ConnectionError):
            await cb.call(fail)
        assert cb.state is CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_ignored_exception_types(self):
        cb = CircuitBreaker(
            CircuitBreakerConfig(name="ignore", failure_threshold=1, ignored_exception_types=(ChatError,))
        )

        async def denied():
            raise AccessDenied("private room")

        with pytest.raises(AccessDenied):
            await cb.call(denied)
        assert cb.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failure_rate_threshold(self):
        cb = CircuitBreaker(
            CircuitBreakerConfig(name="rate", failure_threshold=100, window_size=4, failure_rate_threshold=0.5)
        )
        await cb.call(ok)
        await cb.call(ok)
        with pytest.raises(ConnectionError):
            await cb.call(fail)
        with pytest.raises(ConnectionError):
            await cb.call(fail)
        assert cb.state is CircuitState.OPEN
        assert cb.get_metrics()["failure_rate"] == 0.5

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        cb = CircuitBreaker(CircuitBreakerConfig(name="reset_fc", failure_threshold=5))
        for _ in range(2):
            with pytest.raises(ConnectionError):
                await cb.call(fail)
        assert cb.get_metrics()["failure_count"] == 2
        await cb.call(ok)
        assert cb.get_metrics()["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_reset(self):
        cb = CircuitBreaker(CircuitBreakerConfig(name="manual", failure_threshold=1))
        with pytest.raises(ConnectionError):
            await cb.call(fail)
        cb.reset()
        assert cb.state is CircuitState.CLOSED


# =========================================================================
# RateLimiter
# =========================================================================


class TestRateLimiter:
    def test_default_config(self):
        config = RateLimiterConfig()
        assert config.algorithm == "token_bucket"
        assert config.capacity == 60
        assert config.refill_rate == 10.0

    @pytest.mark.asyncio
    async def test_rejects_when_exhausted(self):
        clock = FakeClock()
        rl = RateLimiter(name="exhaust", config=RateLimiterConfig(capacity=2, refill_rate=1.0), clock=clock)
        assert await rl.acquire() is True
        assert await rl.acquire() is True
        assert await rl.acquire() is False
        assert rl.get_status()["rejected"] == 1

    @pytest.mark.asyncio
    async def test_refill_restores_tokens(self):
        clock = FakeClock()
        rl = RateLimiter(name="refill", config=RateLimiterConfig(capacity=1, refill_rate=2.0), clock=clock)
        assert await rl.acquire() is True
        assert await rl.acquire() is False
        clock.advance(0.5)
        assert await rl.acquire() is True

    def test_token_bucket_never_exceeds_capacity(self):
        clock = FakeClock()
        bucket = TokenBucket(capacity=3, refill_rate=100.0, clock=clock)
        clock.advance(60)
        assert bucket.tokens == 3

    def test_sliding_window(self):
        clock = FakeClock()
        window = SlidingWindow(capacity=2, window_seconds=10, clock=clock)
        assert window.try_acquire()
        assert window.try_acquire()
        assert not window.try_acquire()
        clock.advance(10)
        assert window.try_acquire()

    def test_sliding_window_selected_by_config(self):
        rl = RateLimiter(
            name="sw",
            config=RateLimiterConfig(algorithm="sliding_window", capacity=5, time_window=1.0),
        )
        assert isinstance(rl.algorithm, SlidingWindow)
        assert rl.get_status()["window_seconds"] == 1.0
