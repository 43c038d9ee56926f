# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

"""
In-memory ChatStore

Reference implementation of the ChatStore protocol, used by the test suite
and the example application.  Channels and direct-message conversations are
both rooms; friends are the participants of a user's DM conversations.
"""

import logging
import re
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from .errors import RoomNotFound
from .types import RoomAccess, RoomInfo, RoomKind

log = logging.getLogger("roomcast.memory_store")

MENTION_PATTERN = re.compile(r"@([\w.-]+)")


class InMemoryChatStore:
    """Dict-backed chat store. Not persistent, not shared between processes."""

    def __init__(self):
        self.rooms: dict[str, RoomInfo] = {}
        self.members: dict[str, set[str]] = {}
        self.messages: list[dict[str, Any]] = []

    # -----------------------------------------------------------------
    # Seeding helpers (synchronous, for setup code)
    # -----------------------------------------------------------------

    def create_room(
        self,
        room_id: str,
        *,
        kind: RoomKind = RoomKind.CHANNEL,
        access: RoomAccess = RoomAccess.PUBLIC,
        members: Iterable[str] = (),
    ) -> RoomInfo:
        room = RoomInfo(room_id=room_id, kind=kind, access=access)
        self.rooms[room_id] = room
        self.members.setdefault(room_id, set()).update(members)
        return room

    def create_direct_conversation(self, conversation_id: str, *participants: str) -> RoomInfo:
        return self.create_room(
            conversation_id,
            kind=RoomKind.DIRECT,
            access=RoomAccess.PRIVATE,
            members=participants,
        )

    def remove_member(self, room_id: str, user_id: str) -> bool:
        members = self.members.get(room_id)
        if not members or user_id not in members:
            return False
        members.discard(user_id)
        return True

    # -----------------------------------------------------------------
    # ChatStore protocol
    # -----------------------------------------------------------------

    async def get_room(self, room_id: str) -> RoomInfo | None:
        return self.rooms.get(room_id)

    async def get_rooms_for_user(self, user_id: str) -> set[str]:
        return {room_id for room_id, members in self.members.items() if user_id in members}

    async def is_member(self, room_id: str, user_id: str) -> bool:
        return user_id in self.members.get(room_id, ())

    async def add_member(self, room_id: str, user_id: str) -> bool:
        if room_id not in self.rooms:
            raise RoomNotFound(f"Room {room_id} not found", room_id=room_id)
        members = self.members.setdefault(room_id, set())
        if user_id in members:
            return False
        members.add(user_id)
        log.debug("Added %s to room %s", user_id, room_id)
        return True

    async def get_friends_of(self, user_id: str) -> set[str]:
        friends: set[str] = set()
        for room_id, room in self.rooms.items():
            if room.kind is not RoomKind.DIRECT:
                continue
            participants = self.members.get(room_id, set())
            if user_id in participants:
                friends.update(participants)
        friends.discard(user_id)
        return friends

    async def append_message(self, room_id: str, author_id: str, content: str) -> dict[str, Any]:
        if room_id not in self.rooms:
            raise RoomNotFound(f"Room {room_id} not found", room_id=room_id)

        members = self.members.get(room_id, set())
        mentions: list[str] = []
        for candidate in MENTION_PATTERN.findall(content):
            if candidate in members and candidate not in mentions:
                mentions.append(candidate)

        record = {
            "id": uuid.uuid4().hex,
            "roomId": room_id,
            "authorId": author_id,
            "content": content,
            "mentions": mentions,
            "createdAt": datetime.now(UTC).isoformat(),
        }
        self.messages.append(record)
        return dict(record)
