"""RoomCast embedded in FastAPI.

Mount the chat router next to your REST API. One process, one port.

    pip install "roomcast-server[server]"
    python examples/chat_app.py

Then open http://localhost:8000/chat/health to check status.
WebSocket endpoint: ws://localhost:8000/chat?token=<JWT>

A token for a demo user is printed on startup.
"""

import logging
import time
from contextlib import asynccontextmanager

import jwt
import uvicorn
from fastapi import FastAPI, HTTPException, Request

from roomcast_server import (
    ChatEngine,
    InMemoryChatStore,
    JWTAuthenticator,
    RoomCastConfig,
    create_roomcast_router,
)
from roomcast_server.core.types import RoomAccess

logging.basicConfig(level=logging.INFO)

SECRET = "change-me-to-a-long-random-secret-value"

store = InMemoryChatStore()
store.create_room("general", members=["alice", "bob"])
store.create_room("random")
store.create_room("staff", access=RoomAccess.PRIVATE, members=["alice"])
store.create_direct_conversation("dm-alice-bob", "alice", "bob")

config = RoomCastConfig(
    authenticator=JWTAuthenticator(SECRET),
    grace_period=30.0,
    enable_debug=True,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = ChatEngine(store, config)
    app.state.chat_engine = engine
    await engine.start()
    for user in ("alice", "bob", "carol"):
        token = jwt.encode({"sub": user, "exp": int(time.time()) + 3600}, SECRET, algorithm="HS256")
        print(f"{user}: ws://localhost:8000/chat?token={token}")
    yield
    await engine.shutdown()


app = FastAPI(title="RoomCast Example", lifespan=lifespan)
app.include_router(create_roomcast_router(config))


# -- REST endpoints alongside WebSocket ---------------------------------------

@app.get("/")
async def root():
    return {"service": "RoomCast Example", "ws_endpoint": "/chat"}


@app.post("/api/rooms/{room_id}/messages/{message_id}")
async def edit_message(room_id: str, message_id: str, content: str, request: Request):
    """Edit a message and push the new version to everyone in the room."""
    for message in store.messages:
        if message["id"] == message_id and message["roomId"] == room_id:
            message["content"] = content
            delivered = request.app.state.chat_engine.publish_message_updated(room_id, dict(message))
            return {"status": "updated", "delivered": delivered}
    raise HTTPException(status_code=404, detail="Message not found")


@app.post("/api/rooms/{room_id}/members/{user_id}")
async def add_member(room_id: str, user_id: str, request: Request):
    """Invite a user into a (possibly private) room."""
    if not await store.add_member(room_id, user_id):
        return {"status": "already_member"}
    joined = request.app.state.chat_engine.member_added(room_id, user_id)
    return {"status": "added", "connections": joined}


@app.delete("/api/rooms/{room_id}/members/{user_id}")
async def remove_member(room_id: str, user_id: str, request: Request):
    if not store.remove_member(room_id, user_id):
        raise HTTPException(status_code=404, detail="Not a member")
    left = request.app.state.chat_engine.member_removed(room_id, user_id)
    return {"status": "removed", "connections": left}


@app.post("/api/announce")
async def announce(content: str, request: Request):
    delivered = request.app.state.chat_engine.broadcast_announcement(content)
    return {"status": "sent", "delivered": delivered}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
