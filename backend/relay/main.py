"""Chat Relay Backend Application.

This is the main entry point for the chat relay service. Clients hold a
persistent WebSocket connection; direct and channel messages are stored in
DuckDB and pushed to every recipient that is online at delivery time.

Modules:
    - chat: connection lifecycle, identity directory, delivery engine
    - storage: DuckDB-backed persistence gateway
    - auth: signed connection token verification
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from relay.chat.history_router import router as history_router
from relay.chat.manager import ConnectionManager, get_manager, set_manager
from relay.chat.router import router as chat_router
from relay.config import get_config
from relay.storage.service import MessageStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "uvicorn.access",
    "websockets",
    "websockets.protocol",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in relay.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        root = logging.getLogger()
        root.setLevel(configured_level)
        for handler in root.handlers:
            handler.setFormatter(logging.Formatter(config.logging.format))
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = MessageStore.get_instance(db_path=config.storage.db_path)
    set_manager(ConnectionManager.from_settings(config, store))
    logger.info(
        "Relay ready: db=%s push_timeout=%ss require_token=%s dedupe_channel_recipients=%s",
        config.storage.db_path,
        config.delivery.push_timeout_seconds,
        config.auth.require_token,
        config.delivery.dedupe_channel_recipients,
    )
    if not config.auth.require_token:
        logger.warning(
            "Connections may claim any userId; set auth.require_token to "
            "accept only signed tokens"
        )

    yield  # Application runs here

    # Shutdown
    await get_manager().close_all()
    set_manager(None)
    MessageStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Chat Relay API",
    description="Real-time direct and channel message relay",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(chat_router)
app.include_router(history_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
