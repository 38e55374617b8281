"""Classroom Realtime Backend Application.

This is the main entry point for the realtime messaging service of the
learning platform: room chat with delivery/read receipts, typing indicators
and online presence over a single WebSocket.

Modules:
    - realtime: connection registry, presence, membership, typing, delivery
      engine and the WebSocket/HTTP router
    - auth: bearer-token identity resolution
    - config: YAML settings and secrets

Run with:
    uvicorn app.main:app --app-dir backend
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from app.config import AppConfig, get_config, set_config
from app.realtime.coordinator import RoomSessionCoordinator, set_coordinator
from app.realtime.router import router as realtime_router
from app.realtime.store import DuckDBRoomStore, RoomStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# uvicorn.access logs every HTTP request and WebSocket upgrade; the others log
# every frame or connection, none of which helps when debugging delivery.
for _noisy in (
    "uvicorn.access",
    "websockets",
    "websockets.protocol",
    "duckdb",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[AppConfig] = None,
    store: Optional[RoomStore] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Configuration to use instead of the YAML files.
        store: Room store to use instead of the configured DuckDB file.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Startup
        if config is not None:
            set_config(config)
        app_config = get_config()

        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in realtime.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, app_config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", app_config.logging.level.upper())

        room_store = store or DuckDBRoomStore.get_instance(db_path=app_config.store.path)
        coordinator = RoomSessionCoordinator(room_store, app_config.realtime)
        set_coordinator(coordinator)
        logger.info(
            f"Realtime service ready on "
            f"http://{app_config.server.host}:{app_config.server.port}"
        )

        yield  # Application runs here

        # Shutdown
        await coordinator.close()
        set_coordinator(None)
        if store is None:
            DuckDBRoomStore.reset_instance()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Classroom Realtime API",
        description="Realtime messaging core: room chat, receipts, typing and presence",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(realtime_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
