"""
Database engine and session management (SQLAlchemy asyncio).

Any async SQLAlchemy URL works, e.g. ``sqlite+aiosqlite:///visualflow.db`` or
``postgresql+asyncpg://...``. In-memory SQLite URLs share one connection so
every session sees the same database.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from visualflow.core.config import settings

Base = declarative_base()


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (":memory:" in url or url.endswith("://"))


class Database:
    """Owns one async engine and its session factory."""

    def __init__(self, url: str | None = None, echo: bool | None = None):
        self.url = url or settings.DATABASE_URL or "sqlite+aiosqlite:///:memory:"
        engine_kwargs: dict = {"echo": settings.DATABASE_ECHO if echo is None else echo}
        if _is_memory_sqlite(self.url):
            engine_kwargs.update(
                poolclass=StaticPool, connect_args={"check_same_thread": False}
            )
        self.engine: AsyncEngine = create_async_engine(self.url, **engine_kwargs)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Transactional session: commits on success, rolls back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_schema(self) -> None:
        """Create all tables that do not exist yet."""
        # Registers the mapped tables on Base.metadata
        from visualflow.db import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def dispose(self) -> None:
        await self.engine.dispose()
