# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

"""
RoomCast Core Types

Type definitions shared by every component:
- PresenceStatus: aggregate user status
- ConnectionState: per-connection lifecycle states
- RoomKind / RoomAccess / RoomInfo: what the store tells us about a room
- MembershipDecision: outcome of the auto-join policy
- PresenceTransition: a status change handed to the fanout dispatcher
- ClientEvent / ServerEvent: wire event names
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .errors import InvalidStatus

VOICE_ROOM_PREFIX = "voice:"

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PresenceStatus(Enum):
    """Aggregate presence of a user"""

    ONLINE = "online"
    OFFLINE = "offline"
    AWAY = "away"
    BUSY = "busy"

    @classmethod
    def parse(cls, value: Any) -> "PresenceStatus":
        """Parse a client supplied status, raising InvalidStatus on junk."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise InvalidStatus(
            f"Invalid status: {value!r}",
            allowed=[status.value for status in cls],
        )


# Statuses a connected user may pick; offline is always derived.
EXPLICIT_STATUSES = frozenset({PresenceStatus.ONLINE, PresenceStatus.AWAY, PresenceStatus.BUSY})


class ConnectionState(Enum):
    """Connection lifecycle states"""

    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    JOINED = "joined"
    DISCONNECTED = "disconnected"
    REJECTED = "rejected"


class RoomKind(Enum):
    CHANNEL = "channel"
    DIRECT = "dm"
    VOICE = "voice"


class RoomAccess(Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class MembershipDecision(Enum):
    """Result of the membership check that precedes sends and joins"""

    ALREADY_MEMBER = "already_member"
    AUTO_JOINED = "auto_joined"


# ---------------------------------------------------------------------------
# Wire event names
# ---------------------------------------------------------------------------


class ClientEvent:
    """Inbound event types"""

    AUTHENTICATE = "authenticate"
    JOIN_ROOM = "joinRoom"
    LEAVE_ROOM = "leaveRoom"
    TYPING_START = "typingStart"
    TYPING_STOP = "typingStop"
    UPDATE_STATUS = "updateStatus"
    SEND_MESSAGE = "sendMessage"
    JOIN_VOICE = "joinVoiceChannel"
    LEAVE_VOICE = "leaveVoiceChannel"
    VOICE_STATE = "voiceStateUpdate"
    PING = "ping"
    PONG = "pong"
    TYPING = "typing"
    TYPING_DM = "typingDM"
    UPDATE_GAME_STATUS = "updateGameStatus"


class ServerEvent:
    """Outbound event types"""

    AUTHENTICATED = "authenticated"
    ERROR = "error"
    PONG = "pong"
    HEARTBEAT = "heartbeat"

    # Presence
    USER_ONLINE = "userOnline"
    USER_OFFLINE = "userOffline"
    USER_STATUS_UPDATE = "userStatusUpdate"
    FRIEND_STATUS_CHANGED = "friendStatusChanged"
    ONLINE_USERS_UPDATE = "onlineUsersUpdate"
    STATUS_UPDATED = "statusUpdated"
    USER_GAME_STATUS_CHANGED = "userGameStatusChanged"

    # Typing
    USER_TYPING = "userTyping"
    USER_STOPPED_TYPING = "userStoppedTyping"
    USER_TYPING_DM = "userTypingDM"

    # Rooms
    JOINED_ROOM = "joinedRoom"
    LEFT_ROOM = "leftRoom"
    USER_JOINED_ROOM = "userJoinedRoom"
    USER_LEFT_ROOM = "userLeftRoom"

    # Voice
    JOINED_VOICE = "joinedVoiceChannel"
    LEFT_VOICE = "leftVoiceChannel"
    USER_JOINED_VOICE = "userJoinedVoice"
    USER_LEFT_VOICE = "userLeftVoice"
    USER_VOICE_STATE_CHANGED = "userVoiceStateChanged"

    # Messages
    NEW_MESSAGE = "newMessage"
    MESSAGE_UPDATED = "messageUpdated"
    MESSAGE_DELETED = "messageDeleted"
    MESSAGE_REACTION = "messageReaction"
    MENTIONED = "mentioned"

    # Notifications
    NOTIFICATION = "notification"
    SYSTEM_MESSAGE = "systemMessage"
    SERVER_ANNOUNCEMENT = "serverAnnouncement"


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RoomInfo:
    """Room description as provided by the chat store"""

    room_id: str
    kind: RoomKind = RoomKind.CHANNEL
    access: RoomAccess = RoomAccess.PUBLIC

    @property
    def is_public(self) -> bool:
        return self.access is RoomAccess.PUBLIC


@dataclass(frozen=True)
class PresenceTransition:
    """A presence change that must be broadcast"""

    user_id: str
    old_status: PresenceStatus
    new_status: PresenceStatus
    custom_status: str = ""
    explicit: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def event(self) -> str:
        if self.explicit:
            return ServerEvent.USER_STATUS_UPDATE
        if self.new_status is PresenceStatus.OFFLINE:
            return ServerEvent.USER_OFFLINE
        return ServerEvent.USER_ONLINE

    @property
    def changes_online_count(self) -> bool:
        return not self.explicit and self.old_status is not self.new_status

    def to_payload(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "status": self.new_status.value,
            "previousStatus": self.old_status.value,
            "customStatus": self.custom_status,
            "timestamp": self.timestamp.isoformat(),
        }


def voice_room_id(channel_id: str) -> str:
    """Fanout scope of the voice channel attached to *channel_id*."""
    return f"{VOICE_ROOM_PREFIX}{channel_id}"


def is_voice_room(room_id: str) -> bool:
    return room_id.startswith(VOICE_ROOM_PREFIX)


# =============================================================================
# EOF
# =============================================================================
