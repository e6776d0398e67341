"""Async database manager for Courier-Engine (single-DB)."""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from courier_engine.common.config import CourierSettings, get_settings
from courier_engine.common.models import Base

# Import all model modules so Base.metadata is complete for create_all().
import courier_engine.endpoints.models  # noqa: F401
import courier_engine.deliveries.models  # noqa: F401
import courier_engine.queue.models  # noqa: F401


def engine_options(settings: CourierSettings) -> dict[str, Any]:
    """Backend-specific ``create_async_engine`` keyword arguments.

    Workers, the stall sweep and the database queue all race on conditional
    UPDATEs. On a SQLite file those writers must wait for the lock rather
    than fail, and an in-memory database must be one shared connection or
    every session would see its own empty schema.
    """
    url = make_url(settings.db_url)
    if url.get_backend_name() != "sqlite":
        return {"pool_pre_ping": True}
    options: dict[str, Any] = {
        "connect_args": {"timeout": settings.sqlite_busy_timeout},
    }
    if url.database in (None, "", ":memory:"):
        options["poolclass"] = StaticPool
    return options


class DatabaseManager:
    """Manages a single async database engine."""

    def __init__(self, settings: CourierSettings | None = None):
        self._settings = settings or get_settings()
        self.engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        self.engine = create_async_engine(
            self._settings.db_url, echo=False, **engine_options(self._settings),
        )
        self._session_factory = async_sessionmaker(
            self.engine, expire_on_commit=False
        )

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        if self._session_factory is None:
            raise RuntimeError("DatabaseManager not initialized — call init() first")
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        if self.engine is None:
            raise RuntimeError("DatabaseManager not initialized — call init() first")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> bool:
        """True when the database answers a trivial query."""
        if self.engine is None:
            return False
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def close(self) -> None:
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self._session_factory = None
