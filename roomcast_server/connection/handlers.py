# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

import logging
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from ..core.errors import AccessDenied, AuthenticationFailure, ChatError, InvalidPayload, RateLimited
from ..core.types import ClientEvent, MembershipDecision, ServerEvent
from ..reliability.rate_limiter import RateLimiter
from .lifecycle import Session

if TYPE_CHECKING:
    from ..engine import ChatEngine

log = logging.getLogger("roomcast.handlers")


# =============================================================================
# Handler type alias
# =============================================================================

# A handler is an async callable that takes the event payload
HandlerFunc = Callable[[Any], Coroutine[Any, Any, None]]

# Events accepted before the connection is authenticated
_PRE_AUTH_EVENTS = frozenset({ClientEvent.AUTHENTICATE, ClientEvent.PING, "PING", ClientEvent.PONG, "PONG"})


# =============================================================================
# ChatHandler
# =============================================================================


class ChatHandler:
    """Routes inbound client events of one connection to the engine.

    Errors never leave ``handle_message``: a ChatError is reported to this
    connection as an ``error`` event, anything else is logged with its
    traceback and reported as ``HANDLER_ERROR``.  Other connections never
    see the failed operation.

    Extra event types can be added at runtime::

        handler.register("reportAbuse", handle_report)
    """

    def __init__(self, session: Session, engine: "ChatEngine"):
        self.session = session
        self.engine = engine
        self.rate_limiter = RateLimiter(
            name=f"conn_{session.connection_id}",
            config=engine.config.rate_limit,
        )

        self.handlers: dict[str, HandlerFunc] = {
            # Admission
            ClientEvent.AUTHENTICATE: self.handle_authenticate,
            # Ping / Pong
            ClientEvent.PING: self.handle_ping,
            "PING": self.handle_ping,
            ClientEvent.PONG: self.handle_pong,
            "PONG": self.handle_pong,
            # Rooms
            ClientEvent.JOIN_ROOM: self.handle_join_room,
            "joinChannel": self.handle_join_room,
            "joinConversation": self.handle_join_room,
            ClientEvent.LEAVE_ROOM: self.handle_leave_room,
            "leaveChannel": self.handle_leave_room,
            "leaveConversation": self.handle_leave_room,
            # Typing
            ClientEvent.TYPING_START: self.handle_typing_start,
            ClientEvent.TYPING: self.handle_typing,
            ClientEvent.TYPING_STOP: self.handle_typing_stop,
            "stopTyping": self.handle_typing_stop,
            ClientEvent.TYPING_DM: self.handle_typing_dm,
            # Presence
            ClientEvent.UPDATE_STATUS: self.handle_update_status,
            ClientEvent.UPDATE_GAME_STATUS: self.handle_update_game_status,
            # Messages
            ClientEvent.SEND_MESSAGE: self.handle_send_message,
            # Voice
            ClientEvent.JOIN_VOICE: self.handle_join_voice,
            ClientEvent.LEAVE_VOICE: self.handle_leave_voice,
            ClientEvent.VOICE_STATE: self.handle_voice_state,
        }

    # -----------------------------------------------------------------
    # Registration API
    # -----------------------------------------------------------------

    def register(self, message_type: str, handler: HandlerFunc) -> None:
        """Register a handler for an event type, replacing any existing one."""
        self.handlers[message_type] = handler
        log.debug(f"Registered handler for event type: {message_type}")

    # -----------------------------------------------------------------
    # Message routing
    # -----------------------------------------------------------------

    async def handle_message(self, message_data: dict[str, Any]) -> None:
        """Route one inbound event to its handler"""
        if not message_data:
            return

        message_data = self._normalize_message_format(message_data)
        msg_type = message_data.get("t")
        payload = message_data.get("p")
        conn_id = self.session.connection_id

        self.engine.registry.touch(conn_id)
        log.debug(f"Handling event {msg_type} on {conn_id}")

        handler = self.handlers.get(msg_type)
        if handler is None:
            log.warning(f"Unknown event type: {msg_type}")
            self._send_error(
                {
                    "message": f"Unknown event type: {msg_type}",
                    "code": "UNKNOWN_EVENT",
                    "recoverable": True,
                }
            )
            return

        if msg_type not in _PRE_AUTH_EVENTS and not self.session.is_joined:
            self._send_error(
                {
                    "message": "Authenticate before sending events",
                    "code": "NOT_AUTHENTICATED",
                    "recoverable": True,
                }
            )
            return

        if not await self.rate_limiter.acquire():
            error = RateLimited("Rate limit exceeded. Please slow down your requests.", event=msg_type)
            self._send_error(error.to_payload())
            return

        try:
            await handler(payload)
        except AuthenticationFailure as e:
            log.warning(f"Authentication failed on {conn_id}: {e.message}")
            self._send_error(e.to_payload())
        except ChatError as e:
            log.info(f"{msg_type} rejected on {conn_id}: {e.code} {e.message}")
            self._send_error(e.to_payload())
        except Exception as e:
            log.error(f"Error handling {msg_type}: {e}", exc_info=True)
            self._send_error(
                {
                    "message": f"Error processing event type: {msg_type}",
                    "code": "HANDLER_ERROR",
                    "recoverable": True,
                }
            )

    # -----------------------------------------------------------------
    # Handlers
    # -----------------------------------------------------------------

    async def handle_authenticate(self, payload: Any) -> None:
        token = payload.get("token") if isinstance(payload, dict) else payload
        await self.engine.lifecycle.authenticate(self.session, token)

    async def handle_ping(self, payload: Any) -> None:
        pong: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "connectionId": self.session.connection_id,
        }
        if isinstance(payload, dict) and "timestamp" in payload:
            pong["clientTimestamp"] = payload["timestamp"]
        self.session.transport.deliver(ServerEvent.PONG, pong)

    async def handle_pong(self, payload: Any) -> None:
        # Activity was already refreshed in handle_message
        if isinstance(payload, dict) and isinstance(payload.get("timestamp"), (int, float)):
            latency = datetime.now(UTC).timestamp() * 1000 - payload["timestamp"]
            log.debug(f"Heartbeat round trip on {self.session.connection_id}: {latency:.0f}ms")

    async def handle_join_room(self, payload: Any) -> None:
        await self.engine.lifecycle.join_room(self.session, self._room_id(payload))

    async def handle_leave_room(self, payload: Any) -> None:
        await self.engine.lifecycle.leave_room(self.session, self._room_id(payload))

    async def handle_typing_start(self, payload: Any) -> None:
        room_id = self._room_id(payload)
        conn_id = self.session.connection_id
        if room_id not in self.engine.registry.rooms_for_connection(conn_id):
            raise AccessDenied("Join the room before typing in it", room_id=room_id)
        self.engine.typing.start_typing(room_id, self.session.user_id, exclude_connection_id=conn_id)

    async def handle_typing(self, payload: Any) -> None:
        """``{channelId, isTyping}``: an explicit ``isTyping: false`` stops typing."""
        if isinstance(payload, dict) and payload.get("isTyping") is False:
            await self.handle_typing_stop(payload)
        else:
            await self.handle_typing_start(payload)

    async def handle_typing_stop(self, payload: Any) -> None:
        room_id = self._room_id(payload)
        self.engine.typing.stop_typing(
            room_id,
            self.session.user_id,
            exclude_connection_id=self.session.connection_id,
        )

    async def handle_typing_dm(self, payload: Any) -> None:
        recipient = self._extract_id(payload, ("recipientId", "userId"), "recipientId")
        is_typing = not (isinstance(payload, dict) and payload.get("isTyping") is False)
        user_id = self.session.user_id
        if recipient == user_id:
            return
        self.engine.dispatcher.broadcast_to_user(
            recipient,
            ServerEvent.USER_TYPING_DM,
            {"userId": user_id, "isTyping": is_typing},
        )

    async def handle_update_status(self, payload: Any) -> None:
        if isinstance(payload, dict):
            status = payload.get("status")
            custom_status = payload.get("customStatus")
        else:
            status, custom_status = payload, None
        if custom_status is not None and not isinstance(custom_status, str):
            raise InvalidPayload("customStatus must be a string")

        presence = self.engine.presence
        transition = presence.set_explicit_status(self.session.user_id, status, custom_status)
        self.session.transport.deliver(
            ServerEvent.STATUS_UPDATED,
            {"status": transition.new_status.value, "customStatus": transition.custom_status},
        )
        await presence.announce(transition)

    async def handle_update_game_status(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            raise InvalidPayload("updateGameStatus requires an object payload")
        game = payload.get("game")
        status = payload.get("status")
        for key, value in (("game", game), ("status", status)):
            if value is not None and not isinstance(value, str):
                raise InvalidPayload(f"{key} must be a string")

        max_length = self.engine.config.max_custom_status_length
        game_status = {
            "game": game[:max_length] if game else None,
            "status": status[:max_length] if status else None,
        }
        user_id = self.session.user_id
        conn_id = self.session.connection_id

        rooms = await self.engine.membership.rooms_for_user(user_id)
        if not self.engine.registry.is_registered(conn_id):
            return

        for room_id in sorted(rooms):
            self.engine.dispatcher.broadcast_to_room(
                room_id,
                ServerEvent.USER_GAME_STATUS_CHANGED,
                {"roomId": room_id, "userId": user_id, "gameStatus": game_status},
                exclude_connection_id=conn_id,
            )

    async def handle_send_message(self, payload: Any) -> None:
        room_id = self._room_id(payload)
        content = payload.get("content") if isinstance(payload, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise InvalidPayload("Message content is required", room_id=room_id)
        max_length = self.engine.config.max_content_length
        if len(content) > max_length:
            raise InvalidPayload(
                f"Message content exceeds {max_length} characters",
                room_id=room_id,
                max_length=max_length,
            )

        user_id = self.session.user_id
        conn_id = self.session.connection_id
        registry = self.engine.registry
        dispatcher = self.engine.dispatcher

        # Both store calls must succeed before anything is fanned out
        decision = await self.engine.membership.ensure_can_send(room_id, user_id)
        # An auto-join persisted above stays granted if the append fails
        message = await self.engine.gateway.append_message(room_id, user_id, content)

        if decision is MembershipDecision.AUTO_JOINED:
            was_present = registry.user_in_room(user_id, room_id)
            for target in registry.connections_for_user(user_id):
                registry.record_room_join(target, room_id)
            if not was_present:
                dispatcher.broadcast_to_room(
                    room_id,
                    ServerEvent.USER_JOINED_ROOM,
                    {"roomId": room_id, "userId": user_id},
                    exclude_connection_id=conn_id,
                )

        self.engine.typing.stop_typing(room_id, user_id, exclude_connection_id=conn_id)

        echo = self.engine.config.echo_own_messages
        dispatcher.broadcast_to_room(
            room_id,
            ServerEvent.NEW_MESSAGE,
            message,
            exclude_connection_id=None if echo else conn_id,
        )
        if echo and registry.is_registered(conn_id) and room_id not in registry.rooms_for_connection(conn_id):
            dispatcher.send_to_connection(conn_id, ServerEvent.NEW_MESSAGE, message)

        for mentioned in message.get("mentions") or ():
            if mentioned == user_id:
                continue
            dispatcher.broadcast_to_user(
                mentioned,
                ServerEvent.MENTIONED,
                {"roomId": room_id, "mentionedBy": user_id, "message": message},
            )

    async def handle_join_voice(self, payload: Any) -> None:
        await self.engine.lifecycle.join_voice(self.session, self._channel_id(payload))

    async def handle_leave_voice(self, payload: Any) -> None:
        await self.engine.lifecycle.leave_voice(self.session, self._channel_id(payload))

    async def handle_voice_state(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            raise InvalidPayload("voiceStateUpdate requires an object payload")
        self.engine.lifecycle.update_voice_state(
            self.session,
            self._channel_id(payload),
            muted=bool(payload.get("muted", False)),
            deafened=bool(payload.get("deafened", False)),
        )

    # -----------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------

    @staticmethod
    def _normalize_message_format(message: dict[str, Any]) -> dict[str, Any]:
        if "type" in message and "t" not in message:
            message["t"] = message.pop("type")
        if "payload" in message and "p" not in message:
            message["p"] = message.pop("payload")
        return message

    @staticmethod
    def _extract_id(payload: Any, keys: tuple[str, ...], label: str) -> str:
        if isinstance(payload, (str, int)) and not isinstance(payload, bool):
            value: Any = payload
        elif isinstance(payload, dict):
            value = next((payload[key] for key in keys if payload.get(key) not in (None, "")), None)
        else:
            value = None

        if isinstance(value, bool) or not isinstance(value, (str, int)) or not str(value).strip():
            raise InvalidPayload(f"{label} is required")
        return str(value).strip()

    def _room_id(self, payload: Any) -> str:
        return self._extract_id(payload, ("roomId", "channelId", "conversationId"), "roomId")

    def _channel_id(self, payload: Any) -> str:
        return self._extract_id(payload, ("channelId", "roomId"), "channelId")

    def _send_error(self, error: dict[str, Any]) -> None:
        error.setdefault("details", {})
        error["details"].setdefault("timestamp", datetime.now(UTC).isoformat())
        self.session.transport.deliver(ServerEvent.ERROR, error)
