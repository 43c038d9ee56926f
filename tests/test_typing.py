"""Tests for the typing coordinator."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from conftest import TYPING_TIMEOUT, FakeTransport

from roomcast_server.connection.registry import ConnectionRegistry
from roomcast_server.core.types import ServerEvent
from roomcast_server.fanout.dispatcher import FanoutDispatcher
from roomcast_server.presence.typing_indicators import TypingCoordinator


def _setup(timeout=TYPING_TIMEOUT):
    registry = ConnectionRegistry()
    transports = {}
    for conn_id, user_id in (("a1", "alice"), ("b1", "bob")):
        transports[conn_id] = FakeTransport(conn_id)
        registry.register(conn_id, user_id, transports[conn_id])
        registry.record_room_join(conn_id, "general")
    return TypingCoordinator(FanoutDispatcher(registry), timeout=timeout), transports


# =========================================================================
# Start / stop
# =========================================================================


class TestStartStop:
    @pytest.mark.asyncio
    async def test_repeated_start_broadcasts_once(self):
        typing, t = _setup(timeout=10)
        assert typing.start_typing("general", "alice", exclude_connection_id="a1") is True
        assert typing.start_typing("general", "alice", exclude_connection_id="a1") is False
        assert t["b1"].of(ServerEvent.USER_TYPING) == [{"roomId": "general", "userId": "alice"}]
        assert t["a1"].events == []
        await typing.shutdown()

    @pytest.mark.asyncio
    async def test_stop_broadcasts_only_if_typing(self):
        typing, t = _setup(timeout=10)
        assert typing.stop_typing("general", "alice") is False
        assert t["b1"].events == []

        typing.start_typing("general", "alice")
        assert typing.stop_typing("general", "alice") is True
        assert typing.stop_typing("general", "alice") is False
        assert len(t["b1"].of(ServerEvent.USER_STOPPED_TYPING)) == 1
        assert typing.typing_users("general") == []

    @pytest.mark.asyncio
    async def test_typing_users(self):
        typing, _ = _setup(timeout=10)
        typing.start_typing("general", "bob")
        typing.start_typing("general", "alice")
        assert typing.typing_users("general") == ["alice", "bob"]
        assert typing.is_typing("general", "bob")
        await typing.shutdown()
        assert typing.typing_users("general") == []


# =========================================================================
# Expiry
# =========================================================================


class TestExpiry:
    @pytest.mark.asyncio
    async def test_entry_expires_once(self):
        typing, t = _setup()
        typing.start_typing("general", "alice")
        await asyncio.sleep(TYPING_TIMEOUT * 3)

        assert t["b1"].of(ServerEvent.USER_STOPPED_TYPING) == [{"roomId": "general", "userId": "alice"}]
        assert not typing.is_typing("general", "alice")
        assert typing.expired == 1

    @pytest.mark.asyncio
    async def test_refresh_extends_expiry(self):
        typing, t = _setup(timeout=0.1)
        typing.start_typing("general", "alice")
        await asyncio.sleep(0.06)
        typing.start_typing("general", "alice")
        await asyncio.sleep(0.06)

        assert typing.is_typing("general", "alice")
        assert t["b1"].of(ServerEvent.USER_STOPPED_TYPING) == []

        await asyncio.sleep(0.15)
        assert len(t["b1"].of(ServerEvent.USER_STOPPED_TYPING)) == 1
        assert len(t["b1"].of(ServerEvent.USER_TYPING)) == 1

    @pytest.mark.asyncio
    async def test_explicit_stop_cancels_expiry(self):
        typing, t = _setup()
        typing.start_typing("general", "alice")
        typing.stop_typing("general", "alice")
        await asyncio.sleep(TYPING_TIMEOUT * 3)
        assert len(t["b1"].of(ServerEvent.USER_STOPPED_TYPING)) == 1
        assert typing.expired == 0


# =========================================================================
# Eviction
# =========================================================================


class TestEviction:
    @pytest.mark.asyncio
    async def test_evict_user_across_rooms(self):
        typing, t = _setup(timeout=10)
        typing.start_typing("general", "alice")
        typing.start_typing("random", "alice")
        typing.start_typing("general", "bob")

        assert typing.evict_user("alice") == ["general", "random"]
        assert typing.typing_users("general") == ["bob"]
        assert typing.typing_users("random") == []
        assert t["b1"].of(ServerEvent.USER_STOPPED_TYPING) == [{"roomId": "general", "userId": "alice"}]
        await typing.shutdown()

    @pytest.mark.asyncio
    async def test_evict_connection_keeps_other_devices(self):
        typing, _ = _setup(timeout=10)
        typing.start_typing("general", "alice", exclude_connection_id="a1")
        typing.start_typing("random", "alice", exclude_connection_id="a2")

        assert typing.evict_connection("alice", "a1") == ["general"]
        assert typing.is_typing("random", "alice")
        await typing.shutdown()
