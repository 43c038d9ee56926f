"""Tests for JWT authentication and handshake credential extraction."""

import os
import sys
import time
from types import SimpleNamespace

import jwt
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from roomcast_server.auth import JWTAuthenticator, extract_token
from roomcast_server.core.errors import AuthenticationFailure

SECRET = "test-secret-key-with-enough-length-for-hs256"


def make_token(claims=None, secret=SECRET, **extra):
    payload = {"sub": "alice", "exp": int(time.time()) + 300}
    payload.update(claims or {})
    payload.update(extra)
    return jwt.encode(payload, secret, algorithm="HS256")


def fake_websocket(query=None, headers=None, cookies=None):
    return SimpleNamespace(query_params=query or {}, headers=headers or {}, cookies=cookies or {})


# =========================================================================
# JWTAuthenticator
# =========================================================================


class TestJWTAuthenticator:
    @pytest.mark.asyncio
    async def test_valid_token(self):
        auth = JWTAuthenticator(SECRET)
        assert await auth(make_token()) == "alice"

    @pytest.mark.asyncio
    async def test_bearer_prefix_is_stripped(self):
        auth = JWTAuthenticator(SECRET)
        assert await auth("Bearer " + make_token()) == "alice"

    @pytest.mark.asyncio
    async def test_expired_token(self):
        auth = JWTAuthenticator(SECRET)
        with pytest.raises(AuthenticationFailure) as exc_info:
            await auth(make_token(exp=int(time.time()) - 60))
        assert exc_info.value.details["reason"] == "expired"

    @pytest.mark.asyncio
    async def test_wrong_secret(self):
        auth = JWTAuthenticator(SECRET)
        with pytest.raises(AuthenticationFailure) as exc_info:
            await auth(make_token(secret="another-secret-key-with-enough-length"))
        assert exc_info.value.details["reason"] == "invalid"

    @pytest.mark.asyncio
    async def test_garbage_token(self):
        with pytest.raises(AuthenticationFailure):
            await JWTAuthenticator(SECRET)("not-a-jwt")

    @pytest.mark.asyncio
    async def test_missing_credential(self):
        with pytest.raises(AuthenticationFailure) as exc_info:
            await JWTAuthenticator(SECRET)("   ")
        assert exc_info.value.details["reason"] == "missing"

    @pytest.mark.asyncio
    async def test_missing_user_claim(self):
        auth = JWTAuthenticator(SECRET, user_claim="user_id")
        with pytest.raises(AuthenticationFailure) as exc_info:
            await auth(make_token())
        assert exc_info.value.details["reason"] == "missing_claim"

    @pytest.mark.asyncio
    async def test_custom_user_claim(self):
        auth = JWTAuthenticator(SECRET, user_claim="user_id")
        assert await auth(make_token(user_id=42)) == "42"

    @pytest.mark.asyncio
    async def test_audience(self):
        auth = JWTAuthenticator(SECRET, audience="roomcast")
        assert await auth(make_token(aud="roomcast")) == "alice"
        with pytest.raises(AuthenticationFailure):
            await auth(make_token(aud="billing"))

    @pytest.mark.asyncio
    async def test_unknown_user(self):
        async def user_exists(user_id):
            return user_id == "bob"

        auth = JWTAuthenticator(SECRET, user_exists=user_exists)
        with pytest.raises(AuthenticationFailure) as exc_info:
            await auth(make_token())
        assert exc_info.value.details["reason"] == "unknown_user"
        assert await auth(make_token(sub="bob")) == "bob"


# =========================================================================
# Handshake credential
# =========================================================================


class TestExtractToken:
    def test_query_parameter(self):
        assert extract_token(fake_websocket(query={"token": "q"})) == "q"

    def test_bearer_header(self):
        ws = fake_websocket(headers={"authorization": "Bearer h"})
        assert extract_token(ws) == "h"

    def test_cookie(self):
        assert extract_token(fake_websocket(cookies={"access_token": "c"})) == "c"

    def test_query_wins(self):
        ws = fake_websocket(query={"token": "q"}, cookies={"access_token": "c"})
        assert extract_token(ws) == "q"

    def test_nothing(self):
        assert extract_token(fake_websocket()) is None
