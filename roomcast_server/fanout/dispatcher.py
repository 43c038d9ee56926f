# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

"""
FanoutDispatcher - deliver one event to a set of live connections

Targets are resolved through the ConnectionRegistry at call time:

    broadcast_to_room(room)   -> every connection joined to the room
    broadcast_to_user(user)   -> every connection owned by the user
    broadcast_global()        -> every live connection
    send_to_connection(conn)  -> a single connection

Delivery is synchronous and best effort.  A transport's ``deliver()`` only
queues the event for its sender loop, so a fanout never suspends and events
sent to one room keep the order in which they were dispatched.  A transport
that refuses or raises is logged and skipped; the rest of the fanout goes on.
"""

import logging
from collections.abc import Iterable
from typing import Any

from ..connection.registry import ConnectionRegistry
from ..metrics.connection_metrics import fanout_deliveries_total, fanout_failures_total

log = logging.getLogger("roomcast.fanout")


class FanoutDispatcher:
    """Routes events to connections by room, user, or globally."""

    def __init__(self, registry: ConnectionRegistry):
        self._registry = registry

        # Metrics
        self.broadcasts = 0
        self.deliveries = 0
        self.failed_deliveries = 0

    def broadcast_to_room(
        self,
        room_id: str,
        event: str,
        payload: dict[str, Any],
        exclude_connection_id: str | None = None,
    ) -> int:
        """Deliver to every connection joined to *room_id*. Returns the delivery count."""
        targets = self._registry.connections_in_room(room_id)
        targets.discard(exclude_connection_id)
        return self._fanout(targets, event, payload, scope=f"room {room_id}")

    def broadcast_to_user(
        self,
        user_id: str,
        event: str,
        payload: dict[str, Any],
        exclude_connection_id: str | None = None,
    ) -> int:
        """Deliver to every live connection of *user_id* (all devices)."""
        targets = self._registry.connections_for_user(user_id)
        targets.discard(exclude_connection_id)
        return self._fanout(targets, event, payload, scope=f"user {user_id}")

    def broadcast_global(self, event: str, payload: dict[str, Any]) -> int:
        return self._fanout(self._registry.all_connection_ids(), event, payload, scope="global")

    def send_to_connection(self, connection_id: str, event: str, payload: dict[str, Any]) -> bool:
        return self._fanout([connection_id], event, payload, scope=f"connection {connection_id}") == 1

    def get_stats(self) -> dict[str, int]:
        return {
            "broadcasts": self.broadcasts,
            "deliveries": self.deliveries,
            "failed_deliveries": self.failed_deliveries,
        }

    def _fanout(self, connection_ids: Iterable[str], event: str, payload: dict[str, Any], scope: str) -> int:
        self.broadcasts += 1
        delivered = 0

        for conn_id in connection_ids:
            record = self._registry.get(conn_id)
            if record is None or record.transport is None:
                continue

            try:
                accepted = record.transport.deliver(event, payload)
            except Exception as e:
                log.error(f"Failed to deliver {event} to connection {conn_id}: {e}")
                accepted = False

            if accepted is False:
                self.failed_deliveries += 1
                fanout_failures_total.labels(event=event).inc()
                log.warning(f"Delivery of {event} to {conn_id} refused ({scope})")
                continue

            delivered += 1

        self.deliveries += delivered
        fanout_deliveries_total.labels(event=event).inc(delivered)
        log.debug(f"Fanout {event} to {scope}: {delivered} connection(s)")
        return delivered
