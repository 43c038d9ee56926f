# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

import asyncio
import logging
from dataclasses import dataclass, field

from ..core.types import ServerEvent
from ..fanout.dispatcher import FanoutDispatcher

log = logging.getLogger("roomcast.typing")

TYPING_TIMEOUT = 3.0  # seconds


@dataclass
class TypingEntry:
    """One user typing in one room"""
    room_id: str
    user_id: str
    expires_at: float
    connection_id: str | None = None
    task: asyncio.Task | None = field(default=None, repr=False)


class TypingCoordinator:
    """
    Tracks who is typing where and expires entries automatically.

    At most one entry exists per (room, user).  ``userTyping`` is broadcast
    when an entry is created, a repeated start only pushes the expiry out.
    ``userStoppedTyping`` is broadcast exactly once per entry, whether it ends
    by an explicit stop, by expiry or by eviction on disconnect.
    """

    def __init__(self, dispatcher: FanoutDispatcher, *, timeout: float = TYPING_TIMEOUT):
        self._dispatcher = dispatcher
        self.timeout = timeout
        self._entries: dict[str, dict[str, TypingEntry]] = {}

        self.started = 0
        self.expired = 0

    def start_typing(self, room_id: str, user_id: str, exclude_connection_id: str | None = None) -> bool:
        """Insert or refresh an entry. Returns True if a broadcast was sent."""
        loop = asyncio.get_running_loop()
        expires_at = loop.time() + self.timeout

        room_entries = self._entries.setdefault(room_id, {})
        entry = room_entries.get(user_id)
        if entry is not None:
            entry.expires_at = expires_at
            if exclude_connection_id is not None:
                entry.connection_id = exclude_connection_id
            return False

        entry = TypingEntry(
            room_id=room_id,
            user_id=user_id,
            expires_at=expires_at,
            connection_id=exclude_connection_id,
        )
        entry.task = asyncio.create_task(self._expire(entry))
        room_entries[user_id] = entry
        self.started += 1

        self._dispatcher.broadcast_to_room(
            room_id,
            ServerEvent.USER_TYPING,
            {"roomId": room_id, "userId": user_id},
            exclude_connection_id=exclude_connection_id,
        )
        return True

    def stop_typing(self, room_id: str, user_id: str, exclude_connection_id: str | None = None) -> bool:
        """Remove an entry. Returns True if one existed and a broadcast was sent."""
        entry = self._pop(room_id, user_id)
        if entry is None:
            return False
        if entry.task is not None and entry.task is not asyncio.current_task():
            entry.task.cancel()
        self._broadcast_stopped(entry, exclude_connection_id)
        return True

    def evict_user(self, user_id: str) -> list[str]:
        """Drop every entry of *user_id*; returns the affected rooms."""
        rooms = sorted(room_id for room_id, entries in self._entries.items() if user_id in entries)
        for room_id in rooms:
            self.stop_typing(room_id, user_id)
        if rooms:
            log.debug(f"Evicted typing state of {user_id} from {len(rooms)} rooms")
        return rooms

    def evict_connection(self, user_id: str, connection_id: str) -> list[str]:
        """Drop entries of *user_id* last refreshed from *connection_id*."""
        rooms = sorted(
            room_id
            for room_id, entries in self._entries.items()
            if user_id in entries and entries[user_id].connection_id == connection_id
        )
        for room_id in rooms:
            self.stop_typing(room_id, user_id)
        return rooms

    def typing_users(self, room_id: str) -> list[str]:
        return sorted(self._entries.get(room_id, {}))

    def is_typing(self, room_id: str, user_id: str) -> bool:
        return user_id in self._entries.get(room_id, {})

    async def shutdown(self) -> None:
        tasks = [
            entry.task
            for entries in self._entries.values()
            for entry in entries.values()
            if entry.task is not None
        ]
        self._entries.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_stats(self) -> dict[str, int]:
        return {
            "rooms": len(self._entries),
            "entries": sum(len(entries) for entries in self._entries.values()),
            "started": self.started,
            "expired": self.expired,
        }

    async def _expire(self, entry: TypingEntry) -> None:
        loop = asyncio.get_running_loop()
        try:
            # expires_at moves forward on every refresh
            remaining = entry.expires_at - loop.time()
            while remaining > 0:
                await asyncio.sleep(remaining)
                remaining = entry.expires_at - loop.time()
        except asyncio.CancelledError:
            return

        if self._entries.get(entry.room_id, {}).get(entry.user_id) is not entry:
            return
        self.expired += 1
        log.debug(f"Typing of {entry.user_id} in {entry.room_id} expired")
        self.stop_typing(entry.room_id, entry.user_id)

    def _pop(self, room_id: str, user_id: str) -> TypingEntry | None:
        room_entries = self._entries.get(room_id)
        if not room_entries:
            return None
        entry = room_entries.pop(user_id, None)
        if not room_entries:
            del self._entries[room_id]
        return entry

    def _broadcast_stopped(self, entry: TypingEntry, exclude_connection_id: str | None) -> None:
        self._dispatcher.broadcast_to_room(
            entry.room_id,
            ServerEvent.USER_STOPPED_TYPING,
            {"roomId": entry.room_id, "userId": entry.user_id},
            exclude_connection_id=exclude_connection_id,
        )
