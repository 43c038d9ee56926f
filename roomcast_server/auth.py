# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Any

import jwt

from .core.errors import AuthenticationFailure

if TYPE_CHECKING:
    from fastapi import WebSocket

log = logging.getLogger("roomcast.auth")


def extract_token(websocket: WebSocket) -> str | None:
    """Credential presented at handshake time, if any.

    Looked up in the ``token`` query parameter (standard for WebSocket), the
    ``Authorization: Bearer`` header, then the ``access_token`` cookie.
    """
    token = websocket.query_params.get("token")

    if not token:
        auth_header = websocket.headers.get("authorization", "")
        if auth_header.lower().startswith("bearer "):
            token = auth_header[7:].strip()

    if not token:
        token = websocket.cookies.get("access_token")

    return token or None


class JWTAuthenticator:
    """Maps a signed JWT to a user id.

    Usage::

        config = RoomCastConfig(authenticator=JWTAuthenticator(settings.jwt_secret))

    ``user_exists`` is an optional async callable used to reject tokens of
    users that were deleted after the token was issued.
    """

    def __init__(
        self,
        secret: str,
        *,
        algorithms: Sequence[str] = ("HS256",),
        user_claim: str = "sub",
        issuer: str | None = None,
        audience: str | None = None,
        leeway: float = 0,
        user_exists: Callable[[str], Awaitable[bool]] | None = None,
    ):
        self.secret = secret
        self.algorithms = list(algorithms)
        self.user_claim = user_claim
        self.issuer = issuer
        self.audience = audience
        self.leeway = leeway
        self.user_exists = user_exists

    async def __call__(self, credential: Any) -> str:
        if not isinstance(credential, str) or not credential.strip():
            raise AuthenticationFailure("Authentication error: no token provided", reason="missing")

        token = credential.strip()
        if token.lower().startswith("bearer "):
            token = token[7:].strip()

        claims = self.decode(token)

        user_id = claims.get(self.user_claim)
        if user_id in (None, ""):
            log.warning("Token missing '%s' claim", self.user_claim)
            raise AuthenticationFailure("Authentication error: invalid token", reason="missing_claim")
        user_id = str(user_id)

        if self.user_exists is not None and not await self.user_exists(user_id):
            log.warning("Token for unknown user %s", user_id)
            raise AuthenticationFailure("Authentication error: user not found", reason="unknown_user")

        return user_id

    def decode(self, token: str) -> dict[str, Any]:
        decode_kwargs: dict[str, Any] = {"algorithms": self.algorithms, "leeway": self.leeway}
        if self.issuer is not None:
            decode_kwargs["issuer"] = self.issuer
        if self.audience is not None:
            decode_kwargs["audience"] = self.audience

        try:
            return jwt.decode(token, self.secret, **decode_kwargs)
        except jwt.ExpiredSignatureError:
            log.warning("Token expired")
            raise AuthenticationFailure("Authentication error: token expired", reason="expired") from None
        except jwt.InvalidTokenError as e:
            log.warning("Invalid token: %s", e)
            raise AuthenticationFailure("Authentication error: invalid token", reason="invalid") from None
