"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from arq import create_pool
from arq.connections import RedisSettings
from fastapi import FastAPI

from usf.config import get_settings
from usf.database import close_db, get_session_factory, init_db
from usf.dependencies import get_memory_store
from usf.donations.router import router as donations_router
from usf.entitlements.router import router as badges_router
from usf.entitlements.seed import seed_badges
from usf.entitlements.sql_store import SqlAlchemyStore
from usf.health.router import router as health_router
from usf.middleware import setup_middleware
from usf.redis_client import close_redis, init_redis

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    app.state.arq_pool = None

    if settings.storage_backend == "memory":
        await seed_badges(get_memory_store())
    else:
        await init_db(settings.database_url)
        await init_redis(settings.redis_url)
        try:
            async with get_session_factory()() as db:
                await seed_badges(SqlAlchemyStore(db))
        except Exception:
            logger.warning("badge_seeding_failed", exc_info=True)

    if settings.defer_entitlements:
        app.state.arq_pool = await create_pool(RedisSettings.from_dsn(settings.arq_redis_url))

    yield

    if app.state.arq_pool is not None:
        await app.state.arq_pool.aclose()
    if settings.storage_backend != "memory":
        await close_db()
        await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Usogui Supporter Service",
        description="Ko-fi donation ingestion and supporter badge entitlements",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(donations_router)
    app.include_router(badges_router)

    return app


app = create_app()
