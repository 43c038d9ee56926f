"""Tests for the presence tracker: grace period, explicit status, fanout."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from conftest import GRACE_PERIOD, fake_authenticator

from roomcast_server.config import RoomCastConfig
from roomcast_server.core.errors import InvalidStatus, NotConnected
from roomcast_server.core.types import PresenceStatus, ServerEvent
from roomcast_server.engine import ChatEngine

PRESENCE_EVENTS = (ServerEvent.USER_ONLINE, ServerEvent.USER_OFFLINE, ServerEvent.USER_STATUS_UPDATE)


def presence_of(transport, user_id, events=PRESENCE_EVENTS):
    return [(name, p) for name, p in transport.events if name in events and p.get("userId") == user_id]


async def wait_grace():
    await asyncio.sleep(GRACE_PERIOD * 3)


# =========================================================================
# Online transitions
# =========================================================================


class TestOnline:
    @pytest.mark.asyncio
    async def test_first_connection_broadcasts_to_every_shared_room(self, engine, connect):
        bob = await connect("bob")
        bob.transport.clear()

        await connect("alice")

        online = presence_of(bob.transport, "alice")
        assert sorted(p["roomId"] for _, p in online) == ["dm-alice-bob", "general"]
        assert all(name == ServerEvent.USER_ONLINE for name, _ in online)
        assert all(p["status"] == "online" and p["previousStatus"] == "offline" for _, p in online)

    @pytest.mark.asyncio
    async def test_friends_are_notified(self, engine, connect):
        bob = await connect("bob")
        bob.transport.clear()
        await connect("alice")
        friend = bob.transport.of(ServerEvent.FRIEND_STATUS_CHANGED)
        assert len(friend) == 1
        assert friend[0]["userId"] == "alice"

    @pytest.mark.asyncio
    async def test_online_count_is_broadcast_globally(self, engine, connect):
        bob = await connect("bob")
        bob.transport.clear()
        await connect("carol")
        assert bob.transport.of(ServerEvent.ONLINE_USERS_UPDATE) == [{"onlineCount": 2}]

    @pytest.mark.asyncio
    async def test_additional_connection_is_silent(self, engine, connect):
        bob = await connect("bob")
        await connect("alice")
        bob.transport.clear()

        await connect("alice")

        assert presence_of(bob.transport, "alice") == []
        assert bob.transport.of(ServerEvent.ONLINE_USERS_UPDATE) == []

    @pytest.mark.asyncio
    async def test_transition_only_on_zero_to_one(self, engine):
        engine.registry.register("c1", "alice")
        assert engine.presence.on_connect("alice") is not None
        engine.registry.register("c2", "alice")
        assert engine.presence.on_connect("alice") is None


# =========================================================================
# Grace period
# =========================================================================


class TestGracePeriod:
    @pytest.mark.asyncio
    async def test_reconnect_within_grace_is_invisible(self, engine, connect):
        bob = await connect("bob")
        alice = await connect("alice")
        bob.transport.clear()

        await engine.lifecycle.disconnect(alice)
        await connect("alice")
        await wait_grace()

        assert presence_of(bob.transport, "alice") == []
        assert bob.transport.of(ServerEvent.FRIEND_STATUS_CHANGED) == []
        assert engine.presence.get_status("alice")["status"] == "online"
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_offline_fires_once_after_grace(self, engine, connect):
        bob = await connect("bob")
        alice = await connect("alice")
        bob.transport.clear()

        await engine.lifecycle.disconnect(alice)
        assert presence_of(bob.transport, "alice") == []
        assert engine.presence.is_online("alice") is True

        await wait_grace()

        offline = [p for name, p in presence_of(bob.transport, "alice") if name == ServerEvent.USER_OFFLINE]
        assert sorted(p["roomId"] for p in offline) == ["dm-alice-bob", "general"]
        assert engine.presence.is_online("alice") is False

        await wait_grace()
        assert len(presence_of(bob.transport, "alice")) == 2

    @pytest.mark.asyncio
    async def test_two_connections_scenario(self, engine, connect):
        bob = await connect("bob")
        c1 = await connect("alice", "c1")
        c2 = await connect("alice", "c2")
        bob.transport.clear()

        await engine.lifecycle.disconnect(c1)
        await wait_grace()
        assert presence_of(bob.transport, "alice") == []

        await engine.lifecycle.disconnect(c2)
        await wait_grace()
        offline = [
            p
            for name, p in presence_of(bob.transport, "alice")
            if name == ServerEvent.USER_OFFLINE and p["roomId"] == "general"
        ]
        assert len(offline) == 1

    @pytest.mark.asyncio
    async def test_zero_grace_goes_offline_immediately(self, store):
        engine = ChatEngine(store, RoomCastConfig(authenticator=fake_authenticator, grace_period=0))
        engine.registry.register("c1", "alice")
        engine.presence.on_connect("alice")
        engine.registry.unregister("c1")

        transition = engine.presence.on_disconnect("alice")

        assert transition is not None
        assert transition.new_status is PresenceStatus.OFFLINE
        assert transition.event == ServerEvent.USER_OFFLINE
        assert engine.presence.has_pending_offline("alice") is False

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_offline(self, engine, connect):
        alice = await connect("alice")
        await engine.lifecycle.disconnect(alice)
        assert engine.presence.has_pending_offline("alice")
        await engine.shutdown()
        assert not engine.presence.has_pending_offline("alice")


# =========================================================================
# Explicit status
# =========================================================================


class TestExplicitStatus:
    @pytest.mark.asyncio
    async def test_away_is_broadcast_including_self(self, engine, connect):
        bob = await connect("bob")
        alice = await connect("alice")
        bob.transport.clear()
        alice.transport.clear()

        transition = engine.presence.set_explicit_status("alice", "away", "lunch")
        await engine.presence.announce(transition)

        updates = [p for name, p in presence_of(bob.transport, "alice") if name == ServerEvent.USER_STATUS_UPDATE]
        assert {p["roomId"] for p in updates} == {"general", "dm-alice-bob"}
        assert updates[0]["status"] == "away"
        assert updates[0]["customStatus"] == "lunch"
        assert alice.transport.of(ServerEvent.USER_STATUS_UPDATE)
        # explicit changes do not move the online count
        assert bob.transport.of(ServerEvent.ONLINE_USERS_UPDATE) == []

    @pytest.mark.asyncio
    async def test_unknown_status_rejected(self, engine, connect):
        await connect("alice")
        with pytest.raises(InvalidStatus):
            engine.presence.set_explicit_status("alice", "sleeping")

    @pytest.mark.asyncio
    async def test_offline_cannot_be_set(self, engine, connect):
        await connect("alice")
        with pytest.raises(InvalidStatus):
            engine.presence.set_explicit_status("alice", "offline")

    @pytest.mark.asyncio
    async def test_not_connected_rejected(self, engine):
        with pytest.raises(NotConnected):
            engine.presence.set_explicit_status("alice", "busy")

    @pytest.mark.asyncio
    async def test_override_cleared_when_last_connection_goes(self, engine, connect):
        alice = await connect("alice")
        engine.presence.set_explicit_status("alice", "busy")

        await engine.lifecycle.disconnect(alice)
        await wait_grace()

        status = engine.presence.get_status("alice")
        assert status["status"] == "offline"
        assert status["explicit"] is False

    @pytest.mark.asyncio
    async def test_override_survives_reconnect_within_grace(self, engine, connect):
        alice = await connect("alice")
        engine.presence.set_explicit_status("alice", "away")
        await engine.lifecycle.disconnect(alice)
        await connect("alice")

        assert engine.presence.get_status("alice")["status"] == "away"
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_online_clears_override(self, engine, connect):
        await connect("alice")
        engine.presence.set_explicit_status("alice", "away")
        transition = engine.presence.set_explicit_status("alice", "online")
        assert transition.old_status is PresenceStatus.AWAY
        assert engine.presence.get_status("alice")["explicit"] is False

    @pytest.mark.asyncio
    async def test_custom_status_truncated(self, engine, connect):
        await connect("alice")
        transition = engine.presence.set_explicit_status("alice", "busy", "x" * 250)
        assert len(transition.custom_status) == 100


# =========================================================================
# Record pruning
# =========================================================================


class TestPrune:
    @pytest.mark.asyncio
    async def test_prune_only_old_offline_records(self, engine, connect):
        alice = await connect("alice")
        await connect("bob")
        await engine.lifecycle.disconnect(alice)
        await wait_grace()

        engine.presence.store.get("alice").last_seen -= engine.presence.record_ttl + 1
        assert engine.presence.prune() == 1
        assert engine.presence.get_status("alice") is None
        assert engine.presence.get_status("bob") is not None
