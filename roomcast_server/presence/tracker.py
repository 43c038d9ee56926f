# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

"""
PresenceTracker - derives each user's status from the connection registry

State machine per user:

    Offline --first connection-->        Online
    Online  --additional connection-->   Online   (no broadcast)
    Online  --explicit update-->         Away | Busy | Online
    Online | Away | Busy --last connection gone, grace elapsed--> Offline

A reconnect inside the grace period cancels the pending timer and emits
nothing.  An explicit Away/Busy never survives the Offline transition.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from ..connection.registry import ConnectionRegistry
from ..core.errors import InvalidStatus, NotConnected, StoreUnavailable
from ..core.types import (
    EXPLICIT_STATUSES,
    PresenceStatus,
    PresenceTransition,
    ServerEvent,
    is_voice_room,
)
from ..fanout.dispatcher import FanoutDispatcher
from ..metrics.connection_metrics import presence_transitions_total
from .store import InMemoryPresenceStore, PresenceStore

if TYPE_CHECKING:
    from ..membership.index import MembershipIndex

log = logging.getLogger("roomcast.presence")


class PresenceTracker:
    """Per-user presence state with grace-gated offline transitions."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        dispatcher: FanoutDispatcher,
        membership: "MembershipIndex",
        *,
        grace_period: float = 30.0,
        store: PresenceStore | None = None,
        broadcast_online_count: bool = True,
        max_custom_status_length: int = 100,
        record_ttl: float = 3600.0,
    ):
        self._registry = registry
        self._dispatcher = dispatcher
        self._membership = membership
        self.grace_period = grace_period
        self.store: PresenceStore = store if store is not None else InMemoryPresenceStore()
        self.broadcast_online_count = broadcast_online_count
        self.max_custom_status_length = max_custom_status_length
        self.record_ttl = record_ttl

        self._grace_timers: dict[str, asyncio.Task] = {}

        # Metrics
        self.transitions = 0
        self.reconnects_within_grace = 0

    # -----------------------------------------------------------------
    # Connection events
    # -----------------------------------------------------------------

    def on_connect(self, user_id: str) -> PresenceTransition | None:
        """Call after the connection is registered.

        Returns a transition only when the user goes from zero to one live
        connection.  A reconnect that cancels a pending grace timer is silent.
        """
        record = self.store.get_or_create(user_id)
        record.last_seen = time.time()

        timer = self._grace_timers.pop(user_id, None)
        if timer is not None:
            timer.cancel()
            self.reconnects_within_grace += 1
            log.debug(f"User {user_id} reconnected within grace period, offline cancelled")
            return None

        if len(self._registry.connections_for_user(user_id)) != 1:
            return None
        if record.status is not PresenceStatus.OFFLINE:
            return None

        record.status = PresenceStatus.ONLINE
        record.explicit = False
        return self._transition(user_id, PresenceStatus.OFFLINE, PresenceStatus.ONLINE, record.custom_status)

    def on_disconnect(self, user_id: str) -> PresenceTransition | None:
        """Call after the connection is unregistered.

        When the last connection is gone the Offline transition is deferred by
        the grace period; with a grace period of 0 it is returned right away.
        """
        if self._registry.connections_for_user(user_id):
            return None

        record = self.store.get_or_create(user_id)
        record.last_seen = time.time()

        if self.grace_period <= 0:
            return self._go_offline(user_id)

        previous = self._grace_timers.pop(user_id, None)
        if previous is not None:
            previous.cancel()

        self._grace_timers[user_id] = asyncio.create_task(self._offline_after_grace(user_id))
        log.debug(f"User {user_id} has no connections, offline in {self.grace_period}s")
        return None

    def set_explicit_status(
        self,
        user_id: str,
        status: Any,
        custom_status: str | None = None,
    ) -> PresenceTransition:
        parsed = PresenceStatus.parse(status)
        if parsed not in EXPLICIT_STATUSES:
            raise InvalidStatus(
                f"Status {parsed.value!r} cannot be set explicitly",
                allowed=sorted(s.value for s in EXPLICIT_STATUSES),
            )
        if not self._registry.connections_for_user(user_id):
            raise NotConnected(f"User {user_id} has no live connection", user_id=user_id)

        record = self.store.get_or_create(user_id)
        old_status = record.status
        record.status = parsed
        record.explicit = parsed is not PresenceStatus.ONLINE
        record.last_seen = time.time()
        if custom_status is not None:
            record.custom_status = str(custom_status)[: self.max_custom_status_length]

        return self._transition(user_id, old_status, parsed, record.custom_status, explicit=True)

    # -----------------------------------------------------------------
    # Broadcast
    # -----------------------------------------------------------------

    async def announce(self, transition: PresenceTransition) -> None:
        """Fan a transition out to the user's rooms, friends and the global count."""
        user_id = transition.user_id

        try:
            rooms = await self._membership.rooms_for_user(user_id)
        except StoreUnavailable:
            log.warning(f"Store unavailable, announcing {user_id} presence to cached rooms only")
            rooms = self._membership.cached_rooms(user_id)

        try:
            friends = await self._membership.get_friends_of(user_id)
        except StoreUnavailable:
            log.warning(f"Store unavailable, skipping friend notifications for {user_id}")
            friends = set()

        # The user may have moved on while the store was consulted
        record = self.store.get(user_id)
        if record is None or record.status is not transition.new_status:
            log.debug(f"Dropping stale {transition.event} for {user_id}")
            return

        for conn_id in self._registry.connections_for_user(user_id):
            rooms.update(self._registry.rooms_for_connection(conn_id))

        payload = transition.to_payload()
        for room_id in sorted(rooms):
            if is_voice_room(room_id):
                continue
            self._dispatcher.broadcast_to_room(room_id, transition.event, {**payload, "roomId": room_id})

        for friend_id in friends - {user_id}:
            self._dispatcher.broadcast_to_user(friend_id, ServerEvent.FRIEND_STATUS_CHANGED, payload)

        if self.broadcast_online_count and transition.changes_online_count:
            self._dispatcher.broadcast_global(
                ServerEvent.ONLINE_USERS_UPDATE,
                {"onlineCount": len(self.online_users())},
            )

        if transition.new_status is PresenceStatus.OFFLINE:
            self._membership.forget_user(user_id)

        log.info(
            f"Presence {user_id}: {transition.old_status.value} -> {transition.new_status.value} "
            f"({len(rooms)} rooms, {len(friends)} friends)"
        )

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    def get_status(self, user_id: str) -> dict[str, Any] | None:
        record = self.store.get(user_id)
        if record is None:
            return None
        return {
            "userId": user_id,
            "status": record.status.value,
            "customStatus": record.custom_status,
            "explicit": record.explicit,
            "lastSeen": record.last_seen,
            "connections": len(self._registry.connections_for_user(user_id)),
        }

    def is_online(self, user_id: str) -> bool:
        record = self.store.get(user_id)
        return record is not None and record.status is not PresenceStatus.OFFLINE

    def online_users(self) -> set[str]:
        """Users not offline, including those inside their grace period."""
        return {
            record.user_id
            for record in self.store.records()
            if record.status is not PresenceStatus.OFFLINE
        }

    def has_pending_offline(self, user_id: str) -> bool:
        return user_id in self._grace_timers

    def prune(self, now: float | None = None) -> int:
        """Forget offline users not seen for ``record_ttl`` seconds."""
        now_ts = time.time() if now is None else now
        pruned = 0
        for record in self.store.records():
            if record.status is not PresenceStatus.OFFLINE:
                continue
            if record.user_id in self._grace_timers:
                continue
            if now_ts - record.last_seen > self.record_ttl:
                self.store.remove(record.user_id)
                pruned += 1
        if pruned:
            log.debug(f"Pruned {pruned} presence records")
        return pruned

    async def shutdown(self) -> None:
        timers = list(self._grace_timers.values())
        self._grace_timers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

    def get_stats(self) -> dict[str, Any]:
        return {
            "records": len(self.store.records()),
            "online_users": len(self.online_users()),
            "pending_offline": len(self._grace_timers),
            "transitions": self.transitions,
            "reconnects_within_grace": self.reconnects_within_grace,
            "grace_period": self.grace_period,
        }

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    async def _offline_after_grace(self, user_id: str) -> None:
        try:
            await asyncio.sleep(self.grace_period)
        except asyncio.CancelledError:
            return

        if self._grace_timers.get(user_id) is not asyncio.current_task():
            return
        del self._grace_timers[user_id]

        if self._registry.connections_for_user(user_id):
            return

        transition = self._go_offline(user_id)
        if transition is None:
            return
        try:
            await self.announce(transition)
        except Exception as e:
            log.error(f"Failed to announce offline for {user_id}: {e}", exc_info=True)

    def _go_offline(self, user_id: str) -> PresenceTransition | None:
        record = self.store.get_or_create(user_id)
        if record.status is PresenceStatus.OFFLINE:
            return None
        old_status = record.status
        record.status = PresenceStatus.OFFLINE
        record.explicit = False
        record.last_seen = time.time()
        return self._transition(user_id, old_status, PresenceStatus.OFFLINE, record.custom_status)

    def _transition(
        self,
        user_id: str,
        old_status: PresenceStatus,
        new_status: PresenceStatus,
        custom_status: str,
        explicit: bool = False,
    ) -> PresenceTransition:
        self.transitions += 1
        transition = PresenceTransition(
            user_id=user_id,
            old_status=old_status,
            new_status=new_status,
            custom_status=custom_status,
            explicit=explicit,
        )
        presence_transitions_total.labels(event=transition.event).inc()
        return transition
