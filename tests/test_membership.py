"""Tests for the membership index, auto-join policy and store gateway."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from roomcast_server.core.errors import (
    AccessDenied,
    DuplicateMembership,
    RoomNotFound,
    StoreUnavailable,
)
from roomcast_server.core.memory_store import InMemoryChatStore
from roomcast_server.core.types import MembershipDecision, RoomAccess, RoomKind
from roomcast_server.membership.gateway import StoreGateway
from roomcast_server.membership.index import MembershipIndex
from roomcast_server.reliability.circuit_breaker import CircuitState
from roomcast_server.reliability.config import CircuitBreakerConfig


class CountingStore(InMemoryChatStore):
    def __init__(self):
        super().__init__()
        self.add_calls = 0
        self.rooms_calls = 0

    async def add_member(self, room_id, user_id):
        self.add_calls += 1
        return await super().add_member(room_id, user_id)

    async def get_rooms_for_user(self, user_id):
        self.rooms_calls += 1
        return await super().get_rooms_for_user(user_id)


class RacingStore(InMemoryChatStore):
    """A concurrent grant won the race: the unique constraint fires."""

    async def add_member(self, room_id, user_id):
        self.members[room_id].add(user_id)
        raise DuplicateMembership("already a member", room_id=room_id)


class BrokenStore(InMemoryChatStore):
    async def get_rooms_for_user(self, user_id):
        raise ConnectionError("database down")

    async def is_member(self, room_id, user_id):
        raise ConnectionError("database down")


def _index(store, **breaker):
    config = CircuitBreakerConfig(name="test_store", **breaker) if breaker else None
    return MembershipIndex(StoreGateway(store, config))


def _store(cls=CountingStore):
    s = cls()
    s.create_room("general", members=["alice"])
    s.create_room("secret", access=RoomAccess.PRIVATE, members=["alice"])
    return s


# =========================================================================
# Auto-join policy
# =========================================================================


class TestAutoJoin:
    @pytest.mark.asyncio
    async def test_member_passes(self):
        store = _store()
        index = _index(store)
        assert await index.ensure_can_send("general", "alice") is MembershipDecision.ALREADY_MEMBER
        assert store.add_calls == 0

    @pytest.mark.asyncio
    async def test_public_room_grants_membership_once(self):
        store = _store()
        index = _index(store)
        assert await index.ensure_can_send("general", "bob") is MembershipDecision.AUTO_JOINED
        assert await index.ensure_can_send("general", "bob") is MembershipDecision.ALREADY_MEMBER
        assert store.add_calls == 1
        assert "bob" in store.members["general"]

    @pytest.mark.asyncio
    async def test_private_room_denied_without_mutation(self):
        store = _store()
        index = _index(store)
        with pytest.raises(AccessDenied):
            await index.ensure_can_send("secret", "bob")
        assert store.add_calls == 0
        assert "bob" not in store.members["secret"]
        assert index.denied == 1

    @pytest.mark.asyncio
    async def test_private_room_member_passes(self):
        index = _index(_store())
        assert await index.ensure_can_join("secret", "alice") is MembershipDecision.ALREADY_MEMBER

    @pytest.mark.asyncio
    async def test_unknown_room(self):
        index = _index(_store())
        with pytest.raises(RoomNotFound):
            await index.ensure_can_send("nowhere", "alice")

    @pytest.mark.asyncio
    async def test_duplicate_membership_is_swallowed(self):
        index = _index(_store(RacingStore))
        decision = await index.ensure_can_send("general", "bob")
        assert decision is MembershipDecision.ALREADY_MEMBER

    @pytest.mark.asyncio
    async def test_auto_join_updates_cached_rooms(self):
        index = _index(_store())
        await index.rooms_for_user("bob")
        await index.ensure_can_send("general", "bob")
        assert index.cached_rooms("bob") == {"general"}


# =========================================================================
# Cache
# =========================================================================


class TestCache:
    @pytest.mark.asyncio
    async def test_rooms_cached_until_refresh(self):
        store = _store()
        index = _index(store)
        assert await index.rooms_for_user("alice") == {"general", "secret"}
        await index.rooms_for_user("alice")
        assert store.rooms_calls == 1
        await index.rooms_for_user("alice", refresh=True)
        assert store.rooms_calls == 2

    @pytest.mark.asyncio
    async def test_forget_user(self):
        store = _store()
        index = _index(store)
        await index.rooms_for_user("alice")
        index.forget_user("alice")
        assert index.cached_rooms("alice") == set()

    @pytest.mark.asyncio
    async def test_friends_from_direct_conversations(self):
        store = _store()
        store.create_direct_conversation("dm-1", "alice", "bob")
        store.create_direct_conversation("dm-2", "carol", "alice")
        index = _index(store)
        assert await index.get_friends_of("alice") == {"bob", "carol"}
        assert await index.get_friends_of("bob") == {"alice"}


# =========================================================================
# Store gateway
# =========================================================================


class TestStoreGateway:
    @pytest.mark.asyncio
    async def test_store_failure_becomes_store_unavailable(self):
        index = _index(_store(BrokenStore))
        with pytest.raises(StoreUnavailable):
            await index.rooms_for_user("alice")

    @pytest.mark.asyncio
    async def test_breaker_opens_after_repeated_failures(self):
        store = _store(BrokenStore)
        index = _index(store, failure_threshold=2, reset_timeout_seconds=60)
        for _ in range(3):
            with pytest.raises(StoreUnavailable):
                await index.rooms_for_user("alice", refresh=True)
        breaker = index.gateway.circuit_breaker
        assert breaker.state is CircuitState.OPEN
        assert breaker.get_metrics()["rejected_calls"] == 1

    @pytest.mark.asyncio
    async def test_domain_errors_do_not_trip_breaker(self):
        index = _index(_store(), failure_threshold=1)
        for _ in range(3):
            with pytest.raises(RoomNotFound):
                await index.gateway.add_member("nowhere", "bob")
        assert index.gateway.circuit_breaker.state is CircuitState.CLOSED


# =========================================================================
# In-memory store
# =========================================================================


class TestInMemoryChatStore:
    @pytest.mark.asyncio
    async def test_add_member_reports_existing(self):
        store = _store(InMemoryChatStore)
        assert await store.add_member("general", "bob") is True
        assert await store.add_member("general", "bob") is False

    @pytest.mark.asyncio
    async def test_append_message_extracts_member_mentions(self):
        store = _store(InMemoryChatStore)
        store.create_room("team", members=["alice", "bob"])
        record = await store.append_message("team", "alice", "hi @bob and @bob, not @mallory")
        assert record["mentions"] == ["bob"]
        assert record["roomId"] == "team"
        assert record["authorId"] == "alice"
        assert len(store.messages) == 1

    @pytest.mark.asyncio
    async def test_direct_conversation_is_private(self):
        store = InMemoryChatStore()
        room = store.create_direct_conversation("dm", "alice", "bob")
        assert room.kind is RoomKind.DIRECT
        assert room.is_public is False

    def test_remove_member(self):
        store = _store(InMemoryChatStore)
        assert store.remove_member("general", "alice") is True
        assert store.remove_member("general", "alice") is False
        assert store.members["general"] == set()
