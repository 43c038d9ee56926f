# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

"""
ChatEngine - composition root

Wires the components together and exposes the integration surface used by
the REST layer (message edits, deletions, reactions, notifications and
membership changes made outside the WebSocket).

    engine = ChatEngine(store, RoomCastConfig(authenticator=JWTAuthenticator(secret)))
    await engine.start()
    ...
    await engine.shutdown()
"""

import asyncio
import contextlib
import logging
from datetime import UTC, datetime
from typing import Any

from .config import RoomCastConfig
from .connection.handlers import ChatHandler
from .connection.lifecycle import LifecycleController, Session
from .connection.registry import ConnectionRegistry
from .core.store import ChatStore
from .core.types import ServerEvent
from .fanout.dispatcher import FanoutDispatcher
from .membership.gateway import StoreGateway
from .membership.index import MembershipIndex
from .presence.store import PresenceStore
from .presence.tracker import PresenceTracker
from .presence.typing_indicators import TypingCoordinator

log = logging.getLogger("roomcast.engine")

CLOSE_IDLE = 4408


class ChatEngine:
    def __init__(
        self,
        store: ChatStore,
        config: RoomCastConfig | None = None,
        *,
        presence_store: PresenceStore | None = None,
    ):
        self.config = config or RoomCastConfig()

        self.gateway = StoreGateway(store, self.config.store_breaker)
        self.membership = MembershipIndex(self.gateway)
        self.registry = ConnectionRegistry()
        self.dispatcher = FanoutDispatcher(self.registry)
        self.presence = PresenceTracker(
            self.registry,
            self.dispatcher,
            self.membership,
            grace_period=self.config.grace_period,
            store=presence_store,
            broadcast_online_count=self.config.broadcast_online_count,
            max_custom_status_length=self.config.max_custom_status_length,
            record_ttl=self.config.presence_record_ttl,
        )
        self.typing = TypingCoordinator(self.dispatcher, timeout=self.config.typing_timeout)
        self.lifecycle = LifecycleController(
            self.registry,
            self.dispatcher,
            self.membership,
            self.presence,
            self.typing,
            authenticator=self.config.authenticator,
            max_connections_per_user=self.config.max_connections_per_user,
        )

        self._sweep_task: asyncio.Task | None = None
        self._running = False

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self.config.sweep_interval > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        log.info("Chat engine started")

    async def shutdown(self) -> None:
        self._running = False
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

        await self.typing.shutdown()
        await self.presence.shutdown()
        log.info("Chat engine stopped")

    @property
    def running(self) -> bool:
        return self._running

    def open_session(self, connection_id: str, transport: Any) -> Session:
        return Session(connection_id=connection_id, transport=transport)

    def create_handler(self, session: Session) -> ChatHandler:
        return ChatHandler(session, self)

    # -----------------------------------------------------------------
    # REST-layer integration
    # -----------------------------------------------------------------

    def publish_message_updated(self, room_id: str, message: dict[str, Any]) -> int:
        return self.dispatcher.broadcast_to_room(room_id, ServerEvent.MESSAGE_UPDATED, message)

    def publish_message_deleted(self, room_id: str, message_id: str) -> int:
        return self.dispatcher.broadcast_to_room(
            room_id,
            ServerEvent.MESSAGE_DELETED,
            {"roomId": room_id, "messageId": message_id},
        )

    def publish_reaction(self, room_id: str, message_id: str, user_id: str, emoji: str, added: bool = True) -> int:
        return self.dispatcher.broadcast_to_room(
            room_id,
            ServerEvent.MESSAGE_REACTION,
            {
                "roomId": room_id,
                "messageId": message_id,
                "userId": user_id,
                "emoji": emoji,
                "action": "add" if added else "remove",
            },
        )

    def notify_user(self, user_id: str, notification: dict[str, Any]) -> int:
        return self.dispatcher.broadcast_to_user(user_id, ServerEvent.NOTIFICATION, notification)

    def broadcast_system_message(self, room_id: str, content: str, **extra: Any) -> int:
        return self.dispatcher.broadcast_to_room(
            room_id,
            ServerEvent.SYSTEM_MESSAGE,
            {"roomId": room_id, "content": content, "timestamp": _now(), **extra},
        )

    def broadcast_announcement(self, content: str, **extra: Any) -> int:
        return self.dispatcher.broadcast_global(
            ServerEvent.SERVER_ANNOUNCEMENT,
            {"content": content, "timestamp": _now(), **extra},
        )

    def member_added(self, room_id: str, user_id: str) -> int:
        """A membership was created through the REST layer: join the user's live connections."""
        self.membership.record_membership(room_id, user_id)
        was_present = self.registry.user_in_room(user_id, room_id)
        joined = sum(
            1
            for conn_id in self.registry.connections_for_user(user_id)
            if self.registry.record_room_join(conn_id, room_id)
        )
        if joined and not was_present:
            self.dispatcher.broadcast_to_room(
                room_id,
                ServerEvent.USER_JOINED_ROOM,
                {"roomId": room_id, "userId": user_id},
            )
        return joined

    def member_removed(self, room_id: str, user_id: str) -> int:
        """A membership was revoked through the REST layer: remove the user's connections from the room."""
        self.membership.forget_room_membership(room_id, user_id)
        left = 0
        for conn_id in self.registry.connections_for_user(user_id):
            if self.registry.record_room_leave(conn_id, room_id):
                self.dispatcher.send_to_connection(conn_id, ServerEvent.LEFT_ROOM, {"roomId": room_id})
                left += 1
        if left:
            self.typing.stop_typing(room_id, user_id)
            self.dispatcher.broadcast_to_room(
                room_id,
                ServerEvent.USER_LEFT_ROOM,
                {"roomId": room_id, "userId": user_id},
            )
        return left

    def room_updated(self, room_id: str) -> None:
        """Room settings such as its access changed: drop the cached description."""
        self.membership.invalidate_room(room_id)

    def is_user_online(self, user_id: str) -> bool:
        return self.presence.is_online(user_id)

    def online_users(self) -> list[str]:
        return sorted(self.presence.online_users())

    def typing_users(self, room_id: str) -> list[str]:
        return self.typing.typing_users(room_id)

    def get_stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "registry": self.registry.get_stats(),
            "presence": self.presence.get_stats(),
            "typing": self.typing.get_stats(),
            "fanout": self.dispatcher.get_stats(),
            "membership": self.membership.get_stats(),
            "lifecycle": self.lifecycle.get_stats(),
            "store_breaker": self.gateway.circuit_breaker.get_metrics(),
            "timestamp": _now(),
        }

    # -----------------------------------------------------------------
    # Background sweep
    # -----------------------------------------------------------------

    async def sweep(self) -> int:
        """Close idle connections and prune stale presence records."""
        closed = 0
        for conn_id in self.registry.stale_connections(self.config.idle_timeout):
            record = self.registry.get(conn_id)
            if record is None or record.transport is None:
                continue
            log.info(f"Closing idle connection {conn_id} of user {record.user_id}")
            try:
                await asyncio.wait_for(
                    record.transport.close(code=CLOSE_IDLE, reason="Idle timeout"),
                    timeout=3.0,
                )
            except TimeoutError:
                log.warning(f"Timeout closing idle connection {conn_id}")
            except Exception as e:
                log.warning(f"Error closing idle connection {conn_id}: {e}")
            closed += 1

        self.presence.prune()
        return closed

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.config.sweep_interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.error(f"Sweep loop error: {e}", exc_info=True)


def _now() -> str:
    return datetime.now(UTC).isoformat()
