# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

from typing import Any, Protocol, runtime_checkable

from .types import RoomInfo


@runtime_checkable
class ChatStore(Protocol):
    """Protocol that host applications implement to expose persisted chat data.

    The engine never owns users, rooms or messages.  It reads membership
    through this protocol, grants membership when a user writes to a public
    room, and appends messages before fanning them out.
    """

    async def get_room(self, room_id: str) -> RoomInfo | None:
        """Return the room description or ``None`` when it does not exist."""
        ...

    async def get_rooms_for_user(self, user_id: str) -> set[str]:
        """Every room (channel or DM conversation) *user_id* is a member of."""
        ...

    async def is_member(self, room_id: str, user_id: str) -> bool: ...

    async def add_member(self, room_id: str, user_id: str) -> bool:
        """Persist a membership.

        Returns ``True`` when the membership was created and ``False`` when
        the user already was a member.  Implementations backed by a unique
        constraint may raise :class:`DuplicateMembership` instead.
        """
        ...

    async def get_friends_of(self, user_id: str) -> set[str]:
        """Users sharing a direct-message conversation with *user_id*."""
        ...

    async def append_message(self, room_id: str, author_id: str, content: str) -> dict[str, Any]:
        """Persist a message and return its canonical stored form."""
        ...
