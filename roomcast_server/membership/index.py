# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

"""
Room Membership Index

Read-through cache over the chat store's membership data, plus the auto-join
policy applied before every message send and every room join:

    ALREADY_MEMBER  -> proceed
    AUTO_JOINED     -> public room, membership granted in the store
    AccessDenied    -> private room, nothing changes

Roles are never consulted; only membership and the room's access type matter.
"""

import logging

from ..core.errors import AccessDenied, DuplicateMembership, RoomNotFound
from ..core.types import MembershipDecision, RoomInfo
from .gateway import StoreGateway

log = logging.getLogger("roomcast.membership")


class MembershipIndex:
    """Cached user -> rooms view and auto-join decisions."""

    def __init__(self, gateway: StoreGateway):
        self.gateway = gateway
        self._user_rooms: dict[str, set[str]] = {}
        self._room_info: dict[str, RoomInfo] = {}

        self.auto_joins = 0
        self.denied = 0

    # -----------------------------------------------------------------
    # Lookups
    # -----------------------------------------------------------------

    async def rooms_for_user(self, user_id: str, refresh: bool = False) -> set[str]:
        """Rooms *user_id* is a persisted member of.

        The store is consulted on a cache miss or when *refresh* is set (on
        admission).  Raises StoreUnavailable when the store is down.
        """
        if refresh or user_id not in self._user_rooms:
            rooms = await self.gateway.get_rooms_for_user(user_id)
            self._user_rooms[user_id] = set(rooms)
        return set(self._user_rooms[user_id])

    def cached_rooms(self, user_id: str) -> set[str]:
        return set(self._user_rooms.get(user_id, ()))

    async def is_member(self, room_id: str, user_id: str) -> bool:
        cached = self._user_rooms.get(user_id)
        if cached is not None and room_id in cached:
            return True
        member = await self.gateway.is_member(room_id, user_id)
        if member:
            self.record_membership(room_id, user_id)
        return member

    async def get_room(self, room_id: str) -> RoomInfo:
        room = self._room_info.get(room_id)
        if room is not None:
            return room
        room = await self.gateway.get_room(room_id)
        if room is None:
            raise RoomNotFound(f"Room {room_id} not found", room_id=room_id)
        self._room_info[room_id] = room
        return room

    async def get_friends_of(self, user_id: str) -> set[str]:
        return await self.gateway.get_friends_of(user_id)

    # -----------------------------------------------------------------
    # Auto-join policy
    # -----------------------------------------------------------------

    async def ensure_can_send(self, room_id: str, user_id: str) -> MembershipDecision:
        """Decide whether *user_id* may write to *room_id*, granting public access."""
        room = await self.get_room(room_id)

        if await self.is_member(room_id, user_id):
            return MembershipDecision.ALREADY_MEMBER

        if not room.is_public:
            self.denied += 1
            log.info(f"Denied {user_id} access to private room {room_id}")
            raise AccessDenied(
                "You do not have access to this room",
                room_id=room_id,
            )

        try:
            added = await self.gateway.add_member(room_id, user_id)
        except DuplicateMembership:
            # A concurrent send already granted it
            log.debug(f"Duplicate membership grant for {user_id} in {room_id} ignored")
            added = False

        self.record_membership(room_id, user_id)
        if not added:
            return MembershipDecision.ALREADY_MEMBER

        self.auto_joins += 1
        log.info(f"Auto-joined {user_id} to public room {room_id}")
        return MembershipDecision.AUTO_JOINED

    async def ensure_can_join(self, room_id: str, user_id: str) -> MembershipDecision:
        """Same policy as sending: a connection never enters a private room it is not a member of."""
        return await self.ensure_can_send(room_id, user_id)

    # -----------------------------------------------------------------
    # Cache maintenance
    # -----------------------------------------------------------------

    def record_membership(self, room_id: str, user_id: str) -> None:
        rooms = self._user_rooms.get(user_id)
        if rooms is not None:
            rooms.add(room_id)

    def forget_room_membership(self, room_id: str, user_id: str) -> None:
        rooms = self._user_rooms.get(user_id)
        if rooms is not None:
            rooms.discard(room_id)

    def forget_user(self, user_id: str) -> None:
        """Drop the cached view once the user has gone offline."""
        self._user_rooms.pop(user_id, None)

    def invalidate_room(self, room_id: str) -> None:
        self._room_info.pop(room_id, None)

    def get_stats(self) -> dict[str, int]:
        return {
            "cached_users": len(self._user_rooms),
            "cached_rooms": len(self._room_info),
            "auto_joins": self.auto_joins,
            "denied": self.denied,
        }
