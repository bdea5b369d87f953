"""MindEase Chat Backend Application.

This is the main entry point for the MindEase peer-support chat service.

Modules:
    - chat: WebSocket room chat (join, send, typing, leave) and history
    - rooms: DuckDB-backed room metadata and message history
    - auth: JWT bearer-token verification against the user directory
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mindease.auth.service import UserDirectory
from mindease.chat.protocol import build_protocol, get_protocol, set_protocol
from mindease.chat.router import router as chat_router
from mindease.config import get_config
from mindease.rooms.service import RoomDirectory

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "httpx",
    "httpcore",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in mindease.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    protocol = build_protocol(config)
    set_protocol(protocol)
    logger.info(
        f"Chat protocol ready on http://{config.server.host}:{config.server.port} "
        f"(max_content_length={config.chat.max_content_length})"
    )

    yield  # Application runs here

    # Shutdown
    await get_protocol().router.close_all()
    set_protocol(None)
    RoomDirectory.reset_instance()
    UserDirectory.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="MindEase Chat API",
    description="Real-time peer-support chat rooms for the MindEase wellness app",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
