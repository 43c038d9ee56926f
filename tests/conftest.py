"""Shared fixtures for RoomCast tests."""

import itertools
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from roomcast_server.config import RoomCastConfig
from roomcast_server.core.errors import AuthenticationFailure
from roomcast_server.core.memory_store import InMemoryChatStore
from roomcast_server.core.types import RoomAccess
from roomcast_server.engine import ChatEngine
from roomcast_server.reliability.config import RateLimiterConfig

TOKEN_PREFIX = "token-"

# Short timers so grace periods and typing expiry fire inside a test
GRACE_PERIOD = 0.05
TYPING_TIMEOUT = 0.05


class FakeTransport:
    """Records delivered events instead of writing to a socket."""

    def __init__(self, conn_id: str = "fake"):
        self.conn_id = conn_id
        self.events: list[tuple[str, dict]] = []
        self.closed: tuple[int, str] | None = None
        self.refuse = False

    def deliver(self, event, payload):
        if self.refuse:
            return False
        self.events.append((event, payload))
        return True

    async def close(self, code=1000, reason=""):
        self.closed = (code, reason)

    def of(self, event):
        return [payload for name, payload in self.events if name == event]

    def names(self):
        return [name for name, _ in self.events]

    def clear(self):
        self.events.clear()


async def fake_authenticator(credential):
    if isinstance(credential, str) and credential.startswith(TOKEN_PREFIX):
        return credential[len(TOKEN_PREFIX):]
    raise AuthenticationFailure("Authentication error: invalid token")


@pytest.fixture()
def store():
    """alice and bob share #general and a DM; #secret is private to alice; #lobby is empty."""
    s = InMemoryChatStore()
    s.create_room("general", members=["alice", "bob"])
    s.create_room("random", members=["alice"])
    s.create_room("lobby")
    s.create_room("secret", access=RoomAccess.PRIVATE, members=["alice"])
    s.create_direct_conversation("dm-alice-bob", "alice", "bob")
    return s


@pytest.fixture()
def config():
    return RoomCastConfig(
        authenticator=fake_authenticator,
        grace_period=GRACE_PERIOD,
        typing_timeout=TYPING_TIMEOUT,
        sweep_interval=0,
        rate_limit=RateLimiterConfig(capacity=1000, refill_rate=1000.0),
    )


@pytest.fixture()
def engine(store, config):
    return ChatEngine(store, config)


@pytest.fixture()
def connect(engine):
    """Factory: authenticate a fake connection for *user_id* and return its session."""
    counter = itertools.count(1)

    async def _connect(user_id, conn_id=None):
        conn_id = conn_id or f"{user_id}-c{next(counter)}"
        session = engine.open_session(conn_id, FakeTransport(conn_id))
        await engine.lifecycle.authenticate(session, TOKEN_PREFIX + user_id)
        return session

    return _connect
