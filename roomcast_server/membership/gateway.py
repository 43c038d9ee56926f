# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from ..core.errors import ChatError, StoreUnavailable
from ..core.store import ChatStore
from ..core.types import RoomInfo
from ..reliability.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from ..reliability.config import CircuitBreakerConfig

log = logging.getLogger("roomcast.store_gateway")


def default_store_breaker_config() -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        name="chat_store",
        failure_threshold=5,
        success_threshold=2,
        reset_timeout_seconds=15.0,
        half_open_max_calls=3,
        ignored_exception_types=(ChatError,),
    )


class StoreGateway:
    """Circuit-breaker guarded access to the external ChatStore.

    Every store call is a suspension point.  Domain errors raised by the
    store (``ChatError`` subclasses such as DuplicateMembership) pass through
    untouched; anything else, and calls rejected by an open breaker, surface
    as :class:`StoreUnavailable` so handlers can report a generic failure.
    """

    def __init__(self, store: ChatStore, breaker_config: CircuitBreakerConfig | None = None):
        self.store = store
        config = breaker_config or default_store_breaker_config()
        if not config.ignored_exception_types:
            config.ignored_exception_types = (ChatError,)
        self.circuit_breaker: CircuitBreaker = CircuitBreaker(config)

    async def get_room(self, room_id: str) -> RoomInfo | None:
        return await self._call("get_room", self.store.get_room, room_id)

    async def get_rooms_for_user(self, user_id: str) -> set[str]:
        rooms = await self._call("get_rooms_for_user", self.store.get_rooms_for_user, user_id)
        return {str(room_id) for room_id in rooms}

    async def is_member(self, room_id: str, user_id: str) -> bool:
        return bool(await self._call("is_member", self.store.is_member, room_id, user_id))

    async def add_member(self, room_id: str, user_id: str) -> bool:
        return bool(await self._call("add_member", self.store.add_member, room_id, user_id))

    async def get_friends_of(self, user_id: str) -> set[str]:
        friends = await self._call("get_friends_of", self.store.get_friends_of, user_id)
        return {str(friend) for friend in friends}

    async def append_message(self, room_id: str, author_id: str, content: str) -> dict[str, Any]:
        return await self._call("append_message", self.store.append_message, room_id, author_id, content)

    async def _call(self, operation: str, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        try:
            return await self.circuit_breaker.call(func, *args)
        except ChatError:
            raise
        except CircuitBreakerOpenError as e:
            log.warning("Store call %s rejected, circuit open (retry in %.1fs)", operation, e.retry_after or 0)
            raise StoreUnavailable(
                "Chat service is temporarily unavailable, please retry",
                operation=operation,
            ) from e
        except Exception as e:
            log.error("Store call %s failed: %s: %s", operation, type(e).__name__, e, exc_info=True)
            raise StoreUnavailable(
                "Chat service is temporarily unavailable, please retry",
                operation=operation,
            ) from e
