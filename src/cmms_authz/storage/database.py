"""Database connection and session management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from cmms_authz.storage.models import Base


def _engine_kwargs(database_url: str) -> dict[str, Any]:
    # SQLite connections are cheap and loop-bound under aiosqlite; don't pool them.
    if database_url.startswith("sqlite"):
        return {"poolclass": NullPool}
    return {"pool_size": 5, "max_overflow": 10, "pool_pre_ping": True}


class Database:
    """Owns the async engine and session factory for one database URL.

    Constructed once by bootstrap and handed to the stores, so tests can
    point each context at its own database.
    """

    def __init__(self, database_url: str, **engine_kwargs: Any):
        self.url = database_url
        kwargs = _engine_kwargs(database_url)
        kwargs.update(engine_kwargs)
        self._engine: AsyncEngine = create_async_engine(database_url, echo=False, **kwargs)
        self._session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional async session scope.

        Usage:
            async with db.session() as session:
                result = await session.execute(...)
        """
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def ping(self) -> None:
        async with self.session() as session:
            await session.execute(text("SELECT 1"))

    async def init_db(self) -> None:
        """Create all tables. Used for development/testing only.

        In production, use migrations instead.
        """
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Close the database engine and release all connections."""
        await self._engine.dispose()
