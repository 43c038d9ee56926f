"""RoomCast server -- real-time presence and room fanout for chat applications.

Embed into a FastAPI app as a router::

    from contextlib import asynccontextmanager

    from fastapi import FastAPI
    from roomcast_server import ChatEngine, JWTAuthenticator, RoomCastConfig, create_roomcast_router

    config = RoomCastConfig(authenticator=JWTAuthenticator("secret"))

    @asynccontextmanager
    async def lifespan(app):
        app.state.chat_engine = ChatEngine(my_store, config)
        await app.state.chat_engine.start()
        yield
        await app.state.chat_engine.shutdown()

    app = FastAPI(lifespan=lifespan)
    app.include_router(create_roomcast_router(config))

``my_store`` implements :class:`ChatStore`; :class:`InMemoryChatStore` is a
ready-made implementation for tests and demos.
"""

from .auth import JWTAuthenticator
from .config import RoomCastConfig
from .core.memory_store import InMemoryChatStore
from .core.store import ChatStore
from .engine import ChatEngine
from .router import create_roomcast_router

__version__ = "0.3.0"
__all__ = [
    "create_roomcast_router",
    "RoomCastConfig",
    "ChatEngine",
    "ChatStore",
    "InMemoryChatStore",
    "JWTAuthenticator",
]
