"""
FastAPI application factory for the GameLine read API.

Creates the app with:
- REST routes (unified games, provider quota)
- Middleware stack
- Health check endpoint
- Lifespan management (connect Postgres/Redis on startup, clean up on shutdown)

The API only reads; the reconciler service owns all writes.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI

from shared.config import get_settings
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server
from shared.utils.redis_manager import RedisManager
from shared.utils.retry import connect_with_retry

from api.dependencies import init_dependencies
from api.middleware import setup_middleware
from api.routes.games import router as games_router
from reconciler.store import GameStore, SqlGameStore

logger = get_logger(__name__)


@asynccontextmanager
async def _noop_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """No-op lifespan for testing without DB/Redis."""
    yield


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Connect to Redis and Postgres on startup; disconnect on shutdown."""
    settings = get_settings()
    setup_logging("api")
    start_metrics_server()

    redis = RedisManager(settings)
    db = DatabaseManager(settings)
    await connect_with_retry(redis.connect, "Redis")
    await connect_with_retry(db.connect, "Database")

    init_dependencies(SqlGameStore(db), redis)
    logger.info("api_service_started", host=settings.api_host, port=settings.api_port)

    yield

    await db.disconnect()
    await redis.disconnect()
    logger.info("api_service_stopped")


def create_app(
    *,
    use_lifespan: bool = True,
    store: Optional[GameStore] = None,
    redis: Optional[RedisManager] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Pass use_lifespan=False with an explicit store to run without DB/Redis (tests).
    """
    app = FastAPI(
        title="GameLine API",
        description="Reconciled schedules and betting lines",
        version="0.1.0",
        lifespan=lifespan if use_lifespan else _noop_lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    if store is not None:
        init_dependencies(store, redis)

    setup_middleware(app)
    app.include_router(games_router)

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "api"}

    return app


app = create_app()
