# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

import orjson
from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from .auth import extract_token
from .config import RoomCastConfig
from .connection.connection import PROTOCOL_VERSION, ChatConnection
from .core.types import ClientEvent, ConnectionState, ServerEvent
from .dependencies import ENGINE_STATE_ATTR, get_chat_engine

log = logging.getLogger("roomcast.router")

CLOSE_AUTH_FAILED = 4401
CLOSE_ORIGIN_NOT_ALLOWED = 4403


def _error_frame(code: str, message: str, recoverable: bool = False) -> dict[str, Any]:
    return {
        "v": PROTOCOL_VERSION,
        "t": ServerEvent.ERROR,
        "p": {
            "message": message,
            "code": code,
            "recoverable": recoverable,
            "details": {"timestamp": datetime.now(UTC).isoformat()},
        },
    }


# =============================================================================
# Router factory
# =============================================================================


def create_roomcast_router(config: RoomCastConfig | None = None) -> APIRouter:
    """Create a FastAPI :class:`APIRouter` with the chat WebSocket endpoint.

    The returned router exposes:

    * ``/chat``                        -- WebSocket endpoint (main)
    * ``/chat/health``                 -- HTTP GET health check
    * ``/chat/online``                 -- HTTP GET online users
    * ``/chat/rooms/{room_id}/typing`` -- HTTP GET users typing in a room
    * ``/chat/debug``                  -- HTTP GET engine stats (only when *enable_debug*)

    The :class:`ChatEngine` is looked up in ``app.state.chat_engine``; create
    it and call ``start()`` in the application lifespan.
    """

    config = config or RoomCastConfig()
    router = APIRouter()

    # ------------------------------------------------------------------ #
    # WebSocket endpoint
    # ------------------------------------------------------------------ #

    @router.websocket("/chat")
    async def chat_endpoint(
        websocket: WebSocket,
        client_version: str | None = Query("unknown", description="Client version"),
    ) -> None:
        # Starlette/ASGI cannot close a WebSocket before accepting it
        await websocket.accept()

        # ----- Origin validation (CSWSH protection) -----
        origin = websocket.headers.get("origin", "")
        if config.allowed_origins and origin and origin not in config.allowed_origins:
            log.warning("Rejected WebSocket connection from disallowed origin: %s", origin)
            with contextlib.suppress(Exception):
                await websocket.send_json(_error_frame("ORIGIN_NOT_ALLOWED", "Origin not allowed"))
            await websocket.close(code=CLOSE_ORIGIN_NOT_ALLOWED, reason="Origin not allowed")
            return

        client_ip = websocket.client.host if websocket.client else "unknown"

        # ----- Obtain ChatEngine from application state -----
        try:
            engine = get_chat_engine(websocket)
        except RuntimeError as exc:
            log.error("Failed to get chat engine: %s", exc)
            with contextlib.suppress(Exception):
                await websocket.send_json(_error_frame("SERVER_ERROR", "Server configuration error"))
            await websocket.close(code=1011, reason="Server configuration error")
            return

        conn_id = f"conn_{uuid.uuid4().hex[:12]}"
        log.info(
            "WebSocket connection attempt -- Client: %s, IP: %s, ConnID: %s",
            client_version,
            client_ip,
            conn_id,
        )

        connection = ChatConnection(
            conn_id,
            websocket,
            queue_size=engine.config.send_queue_size,
            heartbeat_interval=engine.config.heartbeat_interval,
        )
        session = engine.open_session(conn_id, connection)
        handler = engine.create_handler(session)
        connection.start()

        loop = asyncio.get_running_loop()
        auth_deadline = loop.time() + config.auth_timeout

        try:
            # ----- Handshake credential -----
            token = extract_token(websocket)
            if token:
                await handler.handle_message({"t": ClientEvent.AUTHENTICATE, "p": {"token": token}})

            # ----- Main message loop -----
            while connection.running:
                if session.state is ConnectionState.REJECTED:
                    break

                if session.state is ConnectionState.CONNECTING and loop.time() > auth_deadline:
                    log.warning("WebSocket %s did not authenticate in time (IP: %s)", conn_id, client_ip)
                    connection.deliver(
                        ServerEvent.ERROR,
                        _error_frame("AUTH_TIMEOUT", "Authentication timeout")["p"],
                    )
                    session.reject(CLOSE_AUTH_FAILED, "Authentication timeout")
                    break

                try:
                    message = await asyncio.wait_for(websocket.receive(), timeout=1.0)
                except TimeoutError:
                    # Normal -- allows checking the running flag
                    continue

                if message["type"] == "websocket.disconnect":
                    log.info("WebSocket %s disconnect message received", conn_id)
                    break
                if message["type"] != "websocket.receive":
                    continue

                raw = message.get("text") or message.get("bytes")
                if raw is None:
                    continue

                size = len(raw.encode()) if isinstance(raw, str) else len(raw)
                if size > config.max_message_size:
                    log.warning("Message of %d bytes on %s exceeds limit, rejecting", size, conn_id)
                    connection.metrics.protocol_errors += 1
                    connection.deliver(
                        ServerEvent.ERROR,
                        {
                            "code": "MESSAGE_TOO_LARGE",
                            "message": f"Message exceeds maximum allowed size of {config.max_message_size} bytes",
                            "recoverable": True,
                            "details": {"max_size": config.max_message_size},
                        },
                    )
                    continue

                connection.record_incoming(size)
                try:
                    parsed = orjson.loads(raw)
                except orjson.JSONDecodeError:
                    parsed = None
                if not isinstance(parsed, dict):
                    connection.metrics.protocol_errors += 1
                    connection.deliver(
                        ServerEvent.ERROR,
                        {"code": "INVALID_MESSAGE", "message": "Malformed message", "recoverable": True},
                    )
                    continue

                await handler.handle_message(parsed)

        except WebSocketDisconnect:
            log.info("WebSocket %s disconnected", conn_id)

        except Exception as exc:
            log.error("WebSocket %s error: %s: %s", conn_id, type(exc).__name__, exc, exc_info=True)

        finally:
            if session.state is ConnectionState.REJECTED:
                await connection.drain(timeout=1.0)
                await connection.close(
                    code=session.close_code or CLOSE_AUTH_FAILED,
                    reason=session.close_reason or "Authentication required",
                )

            try:
                await engine.lifecycle.disconnect(session)
            except Exception as exc:
                log.error("Error releasing connection %s: %s", conn_id, exc, exc_info=True)

            try:
                await connection.cleanup()
            except Exception as exc:
                log.error("Error during connection cleanup: %s", exc)

            if websocket.client_state != WebSocketState.DISCONNECTED:
                with contextlib.suppress(Exception):
                    await websocket.close(code=1000, reason="Normal closure")

            duration = (datetime.now(UTC) - session.opened_at).total_seconds()
            log.info(
                "WebSocket %s closed -- User: %s, Duration: %.1fs, Messages: %d/%d",
                conn_id,
                session.user_id,
                duration,
                connection.metrics.messages_sent,
                connection.metrics.messages_received,
            )

    # ------------------------------------------------------------------ #
    # HTTP endpoints
    # ------------------------------------------------------------------ #

    def _engine_or_503(request: Request):
        engine = getattr(request.app.state, ENGINE_STATE_ATTR, None)
        if engine is None:
            raise HTTPException(status_code=503, detail="Chat engine not available")
        return engine

    @router.get("/chat/health")
    async def chat_health_check(request: Request) -> dict[str, Any]:
        """Health check endpoint for the chat service."""
        engine = getattr(request.app.state, ENGINE_STATE_ATTR, None)
        if engine is None:
            return {
                "status": "unhealthy",
                "chat_service": "error",
                "error": "ChatEngine not available",
                "timestamp": datetime.now(UTC).isoformat(),
            }

        breaker = engine.gateway.circuit_breaker.get_metrics()
        is_healthy = engine.running and breaker["state"] != "OPEN"
        return {
            "status": "healthy" if is_healthy else "unhealthy",
            "chat_service": "active" if engine.running else "stopped",
            "connections": engine.registry.get_stats(),
            "store_breaker": breaker["state"],
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @router.get("/chat/online")
    async def chat_online_users(request: Request) -> dict[str, Any]:
        engine = _engine_or_503(request)
        users = engine.online_users()
        return {"onlineUsers": users, "onlineCount": len(users)}

    @router.get("/chat/rooms/{room_id}/typing")
    async def chat_typing_users(room_id: str, request: Request) -> dict[str, Any]:
        engine = _engine_or_503(request)
        return {"roomId": room_id, "typingUsers": engine.typing_users(room_id)}

    # ------------------------------------------------------------------ #
    # Debug endpoint (gated by config.enable_debug)
    # ------------------------------------------------------------------ #

    if config.enable_debug:

        @router.get("/chat/debug")
        async def chat_debug_info(request: Request) -> dict[str, Any]:
            """Debug endpoint to inspect chat engine state."""
            engine = _engine_or_503(request)
            return {
                "status": "active" if engine.running else "stopped",
                "protocol_version": PROTOCOL_VERSION,
                "engine": engine.get_stats(),
                "allowed_origins": config.allowed_origins,
                "grace_period": engine.config.grace_period,
                "typing_timeout": engine.config.typing_timeout,
                "auth_timeout": config.auth_timeout,
                "max_message_size": config.max_message_size,
                "timestamp": datetime.now(UTC).isoformat(),
            }

    return router
