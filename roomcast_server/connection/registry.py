# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ..core.errors import DuplicateConnection, UnknownConnection
from ..metrics.connection_metrics import chat_connections_active, chat_connections_total
from .connection import Transport

log = logging.getLogger("roomcast.registry")


@dataclass
class ConnectionRecord:
    """Information about a live connection"""
    connection_id: str
    user_id: str
    transport: Transport | None = None
    rooms: set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity: float = field(default_factory=time.monotonic)
    sequence: int = 0


class ConnectionRegistry:
    """
    Tracks every live connection, its owner and the rooms it has joined.

    Three indexes are kept in step: connection -> record, user -> connection
    ids and room -> connection ids.  The registry only mutates structure;
    presence, typing and fanout side effects are the caller's business.
    """

    def __init__(self):
        self._connections: dict[str, ConnectionRecord] = {}
        self._user_connections: dict[str, set[str]] = {}
        self._room_connections: dict[str, set[str]] = {}

        self.total_registered = 0

    def register(self, connection_id: str, user_id: str, transport: Transport | None = None) -> ConnectionRecord:
        if connection_id in self._connections:
            raise DuplicateConnection(
                f"Connection {connection_id} is already registered",
                connection_id=connection_id,
            )

        self.total_registered += 1
        record = ConnectionRecord(
            connection_id=connection_id,
            user_id=user_id,
            transport=transport,
            sequence=self.total_registered,
        )
        self._connections[connection_id] = record
        self._user_connections.setdefault(user_id, set()).add(connection_id)

        chat_connections_total.inc()
        chat_connections_active.inc()

        log.info(
            f"Registered connection {connection_id} for user {user_id}. "
            f"User now has {len(self._user_connections[user_id])} connections."
        )
        return record

    def unregister(self, connection_id: str) -> str:
        record = self._connections.pop(connection_id, None)
        if record is None:
            raise UnknownConnection(
                f"Connection {connection_id} is not registered",
                connection_id=connection_id,
            )

        for room_id in record.rooms:
            self._discard_room_index(room_id, connection_id)

        user_conns = self._user_connections.get(record.user_id)
        if user_conns is not None:
            user_conns.discard(connection_id)
            if not user_conns:
                del self._user_connections[record.user_id]

        chat_connections_active.dec()
        log.info(f"Removed connection {connection_id} for user {record.user_id}")
        return record.user_id

    def record_room_join(self, connection_id: str, room_id: str) -> bool:
        """Add the connection to a room's fanout set. Returns False if already joined."""
        record = self._require(connection_id)
        if room_id in record.rooms:
            return False
        record.rooms.add(room_id)
        self._room_connections.setdefault(room_id, set()).add(connection_id)
        log.debug(f"Connection {connection_id} joined room {room_id}")
        return True

    def record_room_leave(self, connection_id: str, room_id: str) -> bool:
        """Remove the connection from a room's fanout set. Returns False if not joined."""
        record = self._require(connection_id)
        if room_id not in record.rooms:
            return False
        record.rooms.discard(room_id)
        self._discard_room_index(room_id, connection_id)
        log.debug(f"Connection {connection_id} left room {room_id}")
        return True

    # -----------------------------------------------------------------
    # Lookups
    # -----------------------------------------------------------------

    def get(self, connection_id: str) -> ConnectionRecord | None:
        return self._connections.get(connection_id)

    def is_registered(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def connections_for_user(self, user_id: str) -> set[str]:
        return set(self._user_connections.get(user_id, ()))

    def connections_in_room(self, room_id: str) -> set[str]:
        return set(self._room_connections.get(room_id, ()))

    def rooms_for_connection(self, connection_id: str) -> set[str]:
        return set(self._require(connection_id).rooms)

    def user_in_room(self, user_id: str, room_id: str) -> bool:
        """True if any live connection of *user_id* has joined *room_id*."""
        room_conns = self._room_connections.get(room_id)
        if not room_conns:
            return False
        return any(
            self._connections[conn_id].user_id == user_id
            for conn_id in room_conns
        )

    def users_in_room(self, room_id: str) -> set[str]:
        return {
            self._connections[conn_id].user_id
            for conn_id in self._room_connections.get(room_id, ())
        }

    def all_connection_ids(self) -> list[str]:
        return list(self._connections)

    def online_users(self) -> set[str]:
        return set(self._user_connections)

    def touch(self, connection_id: str, now: float | None = None) -> None:
        record = self._connections.get(connection_id)
        if record is not None:
            record.last_activity = time.monotonic() if now is None else now

    def stale_connections(self, idle_timeout: float, now: float | None = None) -> list[str]:
        now_ts = time.monotonic() if now is None else now
        return [
            conn_id
            for conn_id, record in self._connections.items()
            if (now_ts - record.last_activity) > idle_timeout
        ]

    def get_stats(self) -> dict[str, Any]:
        active_users = len(self._user_connections)
        active_connections = len(self._connections)
        avg_connections_per_user = 0.0
        if active_users > 0:
            avg_connections_per_user = active_connections / active_users
        return {
            "active_connections": active_connections,
            "active_users": active_users,
            "active_rooms": len(self._room_connections),
            "total_connections": self.total_registered,
            "avg_connections_per_user": round(avg_connections_per_user, 2),
        }

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _require(self, connection_id: str) -> ConnectionRecord:
        record = self._connections.get(connection_id)
        if record is None:
            raise UnknownConnection(
                f"Connection {connection_id} is not registered",
                connection_id=connection_id,
            )
        return record

    def _discard_room_index(self, room_id: str, connection_id: str) -> None:
        room_conns = self._room_connections.get(room_id)
        if room_conns is None:
            return
        room_conns.discard(connection_id)
        if not room_conns:
            del self._room_connections[room_id]
