# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .reliability.config import CircuitBreakerConfig, RateLimiterConfig

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable


@dataclass
class RoomCastConfig:
    """Configuration for the chat engine and its WebSocket endpoint.

    Attributes:
        authenticator:
            Async callable ``(credential) -> user_id``.  Must raise
            :class:`AuthenticationFailure` for a bad credential.  Without one
            every connection is rejected.
        grace_period:
            Seconds a user stays online after the last connection closes.
            A reconnect inside this window is invisible to observers.
            ``0`` downgrades immediately.
        typing_timeout:
            Seconds after the last ``typingStart`` before a typing entry
            expires on its own.
        echo_own_messages:
            Whether the sender's connection receives its own ``newMessage``.
        broadcast_online_count:
            Send a global ``onlineUsersUpdate`` on online/offline transitions.
        max_connections_per_user:
            Beyond this the oldest connection of the user is closed.
        allowed_origins:
            Allowed Origin header values.  Empty disables the check.
        max_message_size:
            Maximum inbound frame size in bytes.
        max_content_length:
            Maximum length of a chat message body in characters.
        max_custom_status_length:
            Custom status text is truncated to this many characters.
        auth_timeout:
            Seconds an unauthenticated connection may stay open.
        heartbeat_interval:
            Seconds between server ``heartbeat`` events.  Clients answer with
            ``pong``, which counts as activity.  ``0`` disables heartbeats.
        idle_timeout:
            Close connections without inbound activity for this long.
        sweep_interval:
            How often idle connections and stale presence records are swept.
        presence_record_ttl:
            Offline presence records unseen for this long are forgotten.
        send_queue_size:
            Outbound events buffered per connection before new ones drop.
        enable_debug:
            Expose ``/chat/debug``.
        rate_limit:
            Inbound event rate limit applied per connection.
        store_breaker:
            Circuit breaker guarding the chat store.  ``None`` uses defaults.
    """

    authenticator: Callable[[Any], Awaitable[str]] | None = None
    grace_period: float = 30.0
    typing_timeout: float = 3.0
    echo_own_messages: bool = True
    broadcast_online_count: bool = True
    max_connections_per_user: int = 10
    allowed_origins: list[str] = field(default_factory=list)
    max_message_size: int = 65_536  # 64 KB
    max_content_length: int = 2000
    max_custom_status_length: int = 100
    auth_timeout: float = 10.0
    heartbeat_interval: float = 15.0
    idle_timeout: float = 90.0  # 6x heartbeat interval
    sweep_interval: float = 30.0
    presence_record_ttl: float = 3600.0
    send_queue_size: int = 256
    enable_debug: bool = False
    rate_limit: RateLimiterConfig = field(default_factory=RateLimiterConfig)
    store_breaker: CircuitBreakerConfig | None = None
