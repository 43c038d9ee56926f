# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fastapi import WebSocket

    from .engine import ChatEngine

log = logging.getLogger("roomcast.dependencies")

ENGINE_STATE_ATTR = "chat_engine"


def _resolve_app(websocket: WebSocket) -> Any | None:
    app = websocket.scope.get("app")
    if not app:
        request = websocket.scope.get("request")
        if request and hasattr(request, "app"):
            app = request.app
    return app


def get_chat_engine(websocket: WebSocket) -> ChatEngine:
    """Resolve the ChatEngine from the FastAPI app state.

    Usable as a FastAPI ``Depends()`` callable in custom routers that need
    the engine outside of the main ``/chat`` endpoint.

    Raises
    ------
    RuntimeError
        If the engine was not assigned to ``app.state.chat_engine``.
    """
    app = _resolve_app(websocket)
    if not app:
        raise RuntimeError(
            "Cannot access FastAPI app from WebSocket scope.  "
            "Ensure the WebSocket is being served by a FastAPI application."
        )

    engine = getattr(app.state, ENGINE_STATE_ATTR, None)
    if engine is None:
        raise RuntimeError(
            "ChatEngine not found in app.state.  "
            "Make sure to assign it during application lifespan/startup."
        )

    return engine
