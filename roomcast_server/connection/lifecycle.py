# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

"""
LifecycleController - per-connection state machine

    CONNECTING --credential ok-->  AUTHENTICATED --rooms joined--> JOINED
        |                                                            |
        +--bad credential--> REJECTED          transport closed --> DISCONNECTED

Admission registers the connection, silently joins it to every persisted room
of the user and announces presence.  Disconnect unregisters, evicts typing
state, tells rooms the user has left and lets presence decide (after the
grace period) whether the user went offline.

Every store call is a suspension point: the registry is re-checked after each
one before it is mutated.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ..core.errors import (
    AccessDenied,
    AuthenticationFailure,
    InvalidPayload,
    NotConnected,
    StoreUnavailable,
)
from ..core.types import (
    ConnectionState,
    MembershipDecision,
    ServerEvent,
    is_voice_room,
    voice_room_id,
)
from ..fanout.dispatcher import FanoutDispatcher
from ..membership.index import MembershipIndex
from ..presence.tracker import PresenceTracker
from ..presence.typing_indicators import TypingCoordinator
from .connection import Transport
from .registry import ConnectionRegistry

log = logging.getLogger("roomcast.lifecycle")

Authenticator = Callable[[Any], Awaitable[str]]

CLOSE_AUTH_FAILED = 4401
CLOSE_REPLACED = 4000
CLOSE_STORE_UNAVAILABLE = 1011


@dataclass
class Session:
    """One transport session as seen by the lifecycle controller"""
    connection_id: str
    transport: Transport
    user_id: str | None = None
    state: ConnectionState = ConnectionState.CONNECTING
    opened_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    close_code: int | None = None
    close_reason: str = ""

    @property
    def is_joined(self) -> bool:
        return self.state is ConnectionState.JOINED

    def reject(self, code: int, reason: str) -> None:
        self.state = ConnectionState.REJECTED
        self.close_code = code
        self.close_reason = reason


class LifecycleController:
    def __init__(
        self,
        registry: ConnectionRegistry,
        dispatcher: FanoutDispatcher,
        membership: MembershipIndex,
        presence: PresenceTracker,
        typing: TypingCoordinator,
        *,
        authenticator: Authenticator | None = None,
        max_connections_per_user: int = 10,
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.membership = membership
        self.presence = presence
        self.typing = typing
        self.authenticator = authenticator
        self.max_connections_per_user = max_connections_per_user

        self.admitted = 0
        self.rejected = 0

    # -----------------------------------------------------------------
    # Admission
    # -----------------------------------------------------------------

    async def authenticate(self, session: Session, credential: Any) -> str | None:
        """Resolve *credential* to a user and admit the session.

        Raises AuthenticationFailure (session REJECTED) on a bad credential.
        Returns None if the transport went away while the credential was checked.
        """
        if session.state is not ConnectionState.CONNECTING:
            raise InvalidPayload("Connection is already authenticated")

        if self.authenticator is None:
            self._reject(session, CLOSE_AUTH_FAILED, "Authentication required")
            raise AuthenticationFailure("Authentication is not configured")

        if not credential:
            self._reject(session, CLOSE_AUTH_FAILED, "Authentication required")
            raise AuthenticationFailure("No credential presented")

        try:
            user_id = await self.authenticator(credential)
        except AuthenticationFailure:
            self._reject(session, CLOSE_AUTH_FAILED, "Authentication failed")
            raise
        except Exception as e:
            log.error(f"Authenticator raised {type(e).__name__}: {e}", exc_info=True)
            self._reject(session, CLOSE_AUTH_FAILED, "Authentication failed")
            raise AuthenticationFailure("Authentication failed") from e

        if not user_id:
            self._reject(session, CLOSE_AUTH_FAILED, "Authentication failed")
            raise AuthenticationFailure("Authentication failed")

        if session.state is not ConnectionState.CONNECTING:
            log.debug(f"Session {session.connection_id} closed during authentication")
            return None

        session.user_id = str(user_id)
        session.state = ConnectionState.AUTHENTICATED
        await self.admit(session)
        return session.user_id

    async def admit(self, session: Session) -> None:
        user_id = session.user_id
        conn_id = session.connection_id
        if user_id is None:
            raise NotConnected("Session has no authenticated user")

        try:
            rooms = await self.membership.rooms_for_user(user_id, refresh=True)
        except StoreUnavailable:
            self._reject(session, CLOSE_STORE_UNAVAILABLE, "Chat service unavailable")
            raise

        if session.state is not ConnectionState.AUTHENTICATED:
            log.debug(f"Session {conn_id} closed during admission")
            return

        self.registry.register(conn_id, user_id, session.transport)
        for room_id in sorted(rooms):
            self.registry.record_room_join(conn_id, room_id)
        session.state = ConnectionState.JOINED
        self.admitted += 1

        replaced = self._evict_excess_connections(user_id, keep=conn_id)

        transition = self.presence.on_connect(user_id)
        status = self.presence.get_status(user_id) or {}
        self.dispatcher.send_to_connection(
            conn_id,
            ServerEvent.AUTHENTICATED,
            {
                "userId": user_id,
                "connectionId": conn_id,
                "rooms": sorted(rooms),
                "status": status.get("status"),
                "customStatus": status.get("customStatus", ""),
                "serverTime": datetime.now(UTC).isoformat(),
            },
        )

        log.info(f"User {user_id} admitted on {conn_id} with {len(rooms)} rooms")

        if transition is not None:
            await self.presence.announce(transition)

        for transport in replaced:
            await self._close_replaced(transport)

    # -----------------------------------------------------------------
    # Rooms
    # -----------------------------------------------------------------

    async def join_room(self, session: Session, room_id: str) -> MembershipDecision | None:
        user_id = self._require_joined(session)
        if is_voice_room(room_id):
            raise InvalidPayload("Voice channels are joined with joinVoiceChannel", room_id=room_id)

        decision = await self.membership.ensure_can_join(room_id, user_id)

        conn_id = session.connection_id
        if not self.registry.is_registered(conn_id):
            return None

        was_present = self.registry.user_in_room(user_id, room_id)
        targets = {conn_id}
        if decision is MembershipDecision.AUTO_JOINED:
            targets = self.registry.connections_for_user(user_id)
        for target in targets:
            self.registry.record_room_join(target, room_id)

        if not was_present:
            self.dispatcher.broadcast_to_room(
                room_id,
                ServerEvent.USER_JOINED_ROOM,
                {"roomId": room_id, "userId": user_id},
                exclude_connection_id=conn_id,
            )

        self.dispatcher.send_to_connection(
            conn_id,
            ServerEvent.JOINED_ROOM,
            {
                "roomId": room_id,
                "autoJoined": decision is MembershipDecision.AUTO_JOINED,
                "typingUsers": self.typing.typing_users(room_id),
            },
        )
        return decision

    async def leave_room(self, session: Session, room_id: str) -> bool:
        user_id = self._require_joined(session)
        conn_id = session.connection_id

        left = self.registry.record_room_leave(conn_id, room_id)
        if left and not self.registry.user_in_room(user_id, room_id):
            self.typing.stop_typing(room_id, user_id)
            self.dispatcher.broadcast_to_room(
                room_id,
                ServerEvent.USER_LEFT_ROOM,
                {"roomId": room_id, "userId": user_id},
            )

        self.dispatcher.send_to_connection(conn_id, ServerEvent.LEFT_ROOM, {"roomId": room_id})
        return left

    # -----------------------------------------------------------------
    # Voice
    # -----------------------------------------------------------------

    async def join_voice(self, session: Session, channel_id: str) -> None:
        user_id = self._require_joined(session)
        await self.membership.ensure_can_join(channel_id, user_id)

        conn_id = session.connection_id
        if not self.registry.is_registered(conn_id):
            return

        voice_room = voice_room_id(channel_id)
        was_present = self.registry.user_in_room(user_id, voice_room)
        self.registry.record_room_join(conn_id, voice_room)

        if not was_present:
            self.dispatcher.broadcast_to_room(
                channel_id,
                ServerEvent.USER_JOINED_VOICE,
                {"channelId": channel_id, "userId": user_id},
                exclude_connection_id=conn_id,
            )

        self.dispatcher.send_to_connection(
            conn_id,
            ServerEvent.JOINED_VOICE,
            {
                "channelId": channel_id,
                "participants": sorted(self.registry.users_in_room(voice_room)),
            },
        )

    async def leave_voice(self, session: Session, channel_id: str) -> bool:
        user_id = self._require_joined(session)
        conn_id = session.connection_id
        voice_room = voice_room_id(channel_id)

        left = self.registry.record_room_leave(conn_id, voice_room)
        if left and not self.registry.user_in_room(user_id, voice_room):
            self.dispatcher.broadcast_to_room(
                channel_id,
                ServerEvent.USER_LEFT_VOICE,
                {"channelId": channel_id, "userId": user_id},
            )

        self.dispatcher.send_to_connection(conn_id, ServerEvent.LEFT_VOICE, {"channelId": channel_id})
        return left

    def update_voice_state(self, session: Session, channel_id: str, muted: bool, deafened: bool) -> int:
        user_id = self._require_joined(session)
        conn_id = session.connection_id
        voice_room = voice_room_id(channel_id)

        if voice_room not in self.registry.rooms_for_connection(conn_id):
            raise AccessDenied("Not connected to this voice channel", channel_id=channel_id)

        return self.dispatcher.broadcast_to_room(
            voice_room,
            ServerEvent.USER_VOICE_STATE_CHANGED,
            {"channelId": channel_id, "userId": user_id, "muted": muted, "deafened": deafened},
            exclude_connection_id=conn_id,
        )

    # -----------------------------------------------------------------
    # Disconnect
    # -----------------------------------------------------------------

    async def disconnect(self, session: Session) -> None:
        """Tear down a session. Safe to call more than once."""
        if session.state is ConnectionState.DISCONNECTED:
            return
        session.state = ConnectionState.DISCONNECTED

        if not self.registry.is_registered(session.connection_id):
            return

        user_id = self._release(session.connection_id)
        transition = self.presence.on_disconnect(user_id)
        if transition is not None:
            await self.presence.announce(transition)

    def get_stats(self) -> dict[str, Any]:
        return {
            "admitted": self.admitted,
            "rejected": self.rejected,
            "max_connections_per_user": self.max_connections_per_user,
        }

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _require_joined(self, session: Session) -> str:
        if not session.is_joined or session.user_id is None:
            raise NotConnected("Connection is not authenticated")
        return session.user_id

    def _reject(self, session: Session, code: int, reason: str) -> None:
        session.reject(code, reason)
        self.rejected += 1
        log.warning(f"Rejected session {session.connection_id}: {reason}")

    def _release(self, conn_id: str) -> str:
        """Unregister and notify rooms the user no longer has a connection in."""
        rooms = self.registry.rooms_for_connection(conn_id)
        user_id = self.registry.unregister(conn_id)

        if self.registry.connections_for_user(user_id):
            self.typing.evict_connection(user_id, conn_id)
        else:
            self.typing.evict_user(user_id)

        for room_id in sorted(rooms):
            if self.registry.user_in_room(user_id, room_id):
                continue
            if is_voice_room(room_id):
                channel_id = room_id.split(":", 1)[1]
                self.dispatcher.broadcast_to_room(
                    channel_id,
                    ServerEvent.USER_LEFT_VOICE,
                    {"channelId": channel_id, "userId": user_id},
                )
            else:
                self.dispatcher.broadcast_to_room(
                    room_id,
                    ServerEvent.USER_LEFT_ROOM,
                    {"roomId": room_id, "userId": user_id},
                )

        log.info(f"Connection {conn_id} of user {user_id} released from {len(rooms)} rooms")
        return user_id

    def _evict_excess_connections(self, user_id: str, keep: str) -> list[Transport]:
        conn_ids = self.registry.connections_for_user(user_id)
        excess = len(conn_ids) - self.max_connections_per_user
        if excess <= 0:
            return []

        records = sorted(
            (self.registry.get(c) for c in conn_ids if c != keep),
            key=lambda record: (record.connected_at, record.sequence),
        )
        replaced = []
        for record in records[:excess]:
            log.info(
                f"User {user_id} at connection limit ({self.max_connections_per_user}). "
                f"Replacing oldest connection {record.connection_id} with {keep}"
            )
            self._release(record.connection_id)
            if record.transport is not None:
                replaced.append(record.transport)
        return replaced

    async def _close_replaced(self, transport: Transport) -> None:
        try:
            await asyncio.wait_for(
                transport.close(code=CLOSE_REPLACED, reason="Replaced by new connection"),
                timeout=3.0,
            )
        except TimeoutError:
            log.warning("Timeout closing replaced connection (client likely already disconnected)")
        except Exception as e:
            log.warning(f"Error closing replaced connection: {e}")
