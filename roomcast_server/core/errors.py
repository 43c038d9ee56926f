# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

"""
RoomCast error taxonomy

Every error a client can be told about derives from ChatError and knows how
to render itself as the payload of an outbound ``error`` event:

- AuthenticationFailure: terminal, the connection is closed
- AccessDenied / RoomNotFound: room access violations, no state change
- InvalidStatus / InvalidPayload / NotConnected / RateLimited: rejected input
- UnknownConnection / DuplicateConnection: registry misuse, should be unreachable
- DuplicateMembership: raised by stores on a concurrent membership grant
- StoreUnavailable: external store failure, reported as a generic failure
"""

from typing import Any


class ChatError(Exception):
    """Base class for errors reported back to the originating connection."""

    code = "CHAT_ERROR"
    recoverable = True

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "message": self.message,
            "code": self.code,
            "recoverable": self.recoverable,
        }
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class AuthenticationFailure(ChatError):
    code = "AUTH_FAILED"
    recoverable = False


class AccessDenied(ChatError):
    code = "ACCESS_DENIED"


class RoomNotFound(ChatError):
    code = "ROOM_NOT_FOUND"


class InvalidStatus(ChatError):
    code = "INVALID_STATUS"


class InvalidPayload(ChatError):
    code = "INVALID_PAYLOAD"


class NotConnected(ChatError):
    code = "NOT_CONNECTED"


class RateLimited(ChatError):
    code = "RATE_LIMITED"


class DuplicateMembership(ChatError):
    code = "DUPLICATE_MEMBERSHIP"


class StoreUnavailable(ChatError):
    code = "STORE_UNAVAILABLE"


class RegistryError(ChatError):
    code = "REGISTRY_ERROR"
    recoverable = False


class UnknownConnection(RegistryError):
    code = "UNKNOWN_CONNECTION"


class DuplicateConnection(RegistryError):
    code = "DUPLICATE_CONNECTION"
