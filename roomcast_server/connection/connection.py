# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

import asyncio
import contextlib
import logging
import uuid
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol, runtime_checkable

import orjson

from ..core.types import ServerEvent
from ..metrics.connection_metrics import ConnectionMetrics

log = logging.getLogger("roomcast.connection")

# Protocol version for the wire format
PROTOCOL_VERSION = 1

SEND_QUEUE_SIZE = 256
HEARTBEAT_INTERVAL = 15.0  # seconds


# =============================================================================
# Transport Protocol
# =============================================================================


@runtime_checkable
class Transport(Protocol):
    """What the registry and dispatcher need from a live connection."""

    def deliver(self, event: str, payload: dict[str, Any]) -> bool:
        """Queue an event for the client without blocking. False when refused."""
        ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


# =============================================================================
# JSON Serialization
# =============================================================================


def _orjson_default(obj):
    """orjson default handler for types not natively supported."""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if hasattr(obj, "__dict__"):
        return {k: v for k, v in obj.__dict__.items() if not k.startswith("_")}
    raise TypeError(f"Type {type(obj)} is not JSON serializable")


def json_dumps(data: dict[str, Any]) -> str:
    return orjson.dumps(data, default=_orjson_default).decode()


def build_envelope(event: str, payload: dict[str, Any], seq: int = 0) -> dict[str, Any]:
    """Outbound frame: ``{"t", "p", "id", "seq", "ts", "v"}``."""
    return {
        "t": event,
        "p": payload,
        "id": str(uuid.uuid4()),
        "seq": seq,
        "ts": datetime.now(UTC).isoformat(),
        "v": PROTOCOL_VERSION,
    }


# =============================================================================
# ChatConnection
# =============================================================================


class ChatConnection:
    """
    Wraps one WebSocket.

    ``deliver()`` only appends to a bounded queue; a sender task drains the
    queue onto the socket.  Fanout therefore never waits on a slow client,
    and a client whose queue is full loses events instead of stalling others.
    """

    def __init__(
        self,
        conn_id: str,
        ws: Any,
        queue_size: int = SEND_QUEUE_SIZE,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ):
        self.conn_id = conn_id
        self.ws = ws
        self.metrics = ConnectionMetrics(connection_id=conn_id)

        self.close_code: int | None = None
        self.close_reason = ""

        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self._sequence = 0
        self._running = False
        self._sender_task: asyncio.Task | None = None
        self.heartbeat_interval = heartbeat_interval
        self._heartbeat_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the sender task. Must be called from the event loop."""
        if self._running:
            return
        self._running = True
        self.metrics.connected_since = datetime.now(UTC)
        self._sender_task = asyncio.create_task(self._sender_loop())
        if self.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        log.debug(f"Connection {self.conn_id} started")

    def deliver(self, event: str, payload: dict[str, Any]) -> bool:
        if not self._running:
            return False

        message = build_envelope(event, payload, self._next_sequence())
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.metrics.record_dropped()
            log.warning(f"Send queue full for {self.conn_id}, dropped {event}")
            return False
        return True

    async def drain(self, timeout: float = 1.0) -> None:
        """Wait until queued events have been written, at most *timeout* seconds."""
        if not self._running:
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._queue.join(), timeout=timeout)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason
        self._running = False
        try:
            await self.ws.close(code=code, reason=reason)
        except Exception as e:
            log.debug(f"Close of {self.conn_id} failed: {e}")

    async def cleanup(self) -> None:
        """Stop the background tasks and log final metrics"""
        self._running = False

        tasks = [t for t in (self._sender_task, self._heartbeat_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._sender_task = None
        self._heartbeat_task = None

        log.info(
            f"Connection {self.conn_id} closed - "
            f"Messages: {self.metrics.messages_sent}/{self.metrics.messages_received}, "
            f"Bytes: {self.metrics.bytes_sent}/{self.metrics.bytes_received}, "
            f"Dropped: {self.metrics.messages_dropped}"
        )

    def record_incoming(self, size: int) -> None:
        self.metrics.record_message_received(size)

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _is_ws_connected(self) -> bool:
        state = getattr(self.ws, "client_state", None)
        if state is None:
            return True
        if isinstance(state, Enum):
            return state.name == "CONNECTED"
        return True

    async def _sender_loop(self) -> None:
        """Write queued events to the socket in order"""
        while self._running:
            try:
                message = await self._queue.get()
            except asyncio.CancelledError:
                break

            try:
                await self._send_raw(message)
            except asyncio.CancelledError:
                self._queue.task_done()
                break
            except Exception as e:
                log.error(f"Sender loop error on {self.conn_id}: {e}")
                self.metrics.record_error()
            self._queue.task_done()

    async def _heartbeat_loop(self) -> None:
        """Send periodic heartbeats; the client's pong refreshes its activity"""
        while self._running:
            try:
                await asyncio.sleep(self.heartbeat_interval)
                self.deliver(
                    ServerEvent.HEARTBEAT,
                    {
                        "timestamp": int(datetime.now(UTC).timestamp() * 1000),
                        "sequence": self._sequence,
                    },
                )
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.error(f"Heartbeat error on {self.conn_id}: {e}")

    async def _send_raw(self, message: dict[str, Any]) -> None:
        if not self._is_ws_connected():
            return
        data = json_dumps(message)
        await self.ws.send_text(data)
        self.metrics.record_message_sent(len(data))
