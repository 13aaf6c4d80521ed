"""chatsync Backend Application.

Serves one realtime chat room session to a local rendering process.
The session keeps the room's messages, reactions, read receipts, pins,
typing indicators, presence and activity streak consistent across the
message store change feed, the broadcast channel and the presence channel.

Modules:
    - room: reconciler, typing lifecycle, mentions, engagement, send pipeline, session
    - adapters: message store / broadcast / presence / content store backends
    - api: HTTP + WebSocket surface over the session

Run with::

    python -m chatsync
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional, Tuple

from fastapi import FastAPI

from chatsync.adapters import (
    HttpContentStore,
    InMemoryBroadcastHub,
    InMemoryMessageStore,
    InMemoryPresenceHub,
)
from chatsync.api.router import router as session_router
from chatsync.config import AppSettings, get_config
from chatsync.room.models import Member
from chatsync.room.session import RoomSession

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# httpx/httpcore log every connection and request line
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def build_local_session(config: AppSettings) -> Tuple[RoomSession, HttpContentStore]:
    """Build a session over in-process adapters, with uploads going to ``config.content``.

    Returns the session and the content store, which the caller closes.
    """
    me = Member(user_id=config.room.user_id, display_name=config.room.display_name)
    content_store = HttpContentStore(
        config.content.base_url,
        bucket=config.content.bucket,
        timeout_seconds=config.content.timeout_seconds,
    )
    store = InMemoryMessageStore()
    store.add_member(config.room.room_id, me)
    for entry in config.room.members:
        store.add_member(
            config.room.room_id,
            Member(user_id=entry.user_id, display_name=entry.display_name),
        )
    session = RoomSession(
        room_id=config.room.room_id,
        me=me,
        store=store,
        broadcast=InMemoryBroadcastHub().channel(),
        presence=InMemoryPresenceHub().channel(me.user_id),
        content_store=content_store,
        settings=config,
    )
    return session, content_store


def create_app(session: Optional[RoomSession] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        session: Session to serve. When omitted, the lifespan builds a local
            one from ``chatsync.settings.yaml``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Startup
        config = get_config()

        # Apply configured log level to root logger
        configured_level = getattr(logging, config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", config.logging.level.upper())

        owned_store = None
        room_session = session
        if room_session is None:
            room_session, owned_store = build_local_session(config)
        app.state.session = room_session
        await room_session.start()
        logger.info(
            f"Session ready: room={room_session.room_id}, user={room_session.me.user_id}"
        )

        yield  # Application runs here

        # Shutdown
        await room_session.close()
        if owned_store is not None:
            await owned_store.aclose()
        app.state.session = None
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="chatsync API",
        description="Realtime room synchronization core for a chat client",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.session = None
    app.include_router(session_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
