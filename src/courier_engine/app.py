"""FastAPI application factory for Courier-Engine."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from courier_engine.common.config import get_settings
from courier_engine.common.logging import setup_logging
from courier_engine.common.schemas import HealthResponse

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        setup_logging(settings.log_level)
        from courier_engine.deps import get_db, get_worker_pool
        db = get_db()
        await db.init()
        await db.create_all()
        pool = get_worker_pool() if settings.run_worker_in_app else None
        if pool is not None:
            await pool.start()
        yield
        # Shutdown
        if pool is not None:
            await pool.stop()
        await db.close()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        from courier_engine.deps import get_db
        try:
            database = "ok" if await get_db().ping() else "unavailable"
        except Exception:
            logger.exception("Database health check failed")
            database = "unavailable"
        return HealthResponse(version=settings.api_version, database=database)

    # Mount routers
    from courier_engine.endpoints.router import router as webhook_router
    from courier_engine.dispatch.router import router as events_router

    prefix = settings.api_prefix
    app.include_router(webhook_router, prefix=prefix, tags=["webhooks"])
    app.include_router(events_router, prefix=prefix, tags=["events"])

    return app
