# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

from dataclasses import dataclass


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration.

    Attributes:
        name: Identifier used in log lines and metrics.
        failure_threshold: Consecutive failures before opening.
        success_threshold: Successes required in HALF_OPEN to close.
        reset_timeout_seconds: Seconds to stay OPEN before probing.
        half_open_max_calls: Probe calls allowed while HALF_OPEN.
        window_size: Sliding window size for failure-rate calculation.
            ``None`` disables rate-based tripping.
        failure_rate_threshold: Fraction (0..1) of failures in the window
            that opens the breaker.  Only used when *window_size* is set.
        ignored_exception_types: Exception classes that pass through without
            counting as failures (domain errors raised by a healthy store).
    """

    name: str = "default"
    failure_threshold: int = 5
    success_threshold: int = 2
    reset_timeout_seconds: float = 30.0
    half_open_max_calls: int = 3
    window_size: int | None = None
    failure_rate_threshold: float | None = None
    ignored_exception_types: tuple[type[BaseException], ...] | None = None


@dataclass
class RateLimiterConfig:
    """Inbound event rate limiter configuration.

    Attributes:
        algorithm: ``"token_bucket"`` (default) or ``"sliding_window"``.
        capacity: Maximum burst size (bucket capacity or window limit).
        refill_rate: Tokens restored per second (token bucket only).
        initial_tokens: Starting token count.  Defaults to *capacity*.
        time_window: Window length in seconds (sliding window only).
    """

    algorithm: str = "token_bucket"
    capacity: int = 60
    refill_rate: float = 10.0
    initial_tokens: int | None = None
    time_window: float | None = None
