"""Async engine and transactional sessions for the transfer store.

Every phase of a sync cycle that writes (batch insert plus cursor move, or
reorg rollback) runs inside one ``get_async_session`` block, so it commits or
rolls back as a unit.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from crypto_tracker_indexer.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


def normalize_async_database_url(database_url: str) -> str:
    """Map a plain ``postgresql://`` URL onto the asyncpg driver."""
    if database_url.startswith("postgresql://"):
        logger.warning(
            "Database URL uses sync dialect 'postgresql://'; using async driver 'postgresql+asyncpg://'."
        )
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def _engine_options(database_url: str, *, pool_size: int, max_overflow: int, echo: bool) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": echo}
    # aiosqlite runs on a singleton pool that rejects sizing options
    if not database_url.startswith("sqlite"):
        options.update(pool_size=pool_size, max_overflow=max_overflow, pool_pre_ping=True)
    return options


class DatabaseManager:
    """Owns the shared async engine; the engine is created on first use.

    Example:
        ```python
        db = DatabaseManager(settings.database.url, pool_size=5)
        async with db.get_async_session() as session:
            await TransferRepository(session).insert_many(records)
        await db.dispose_async()
        ```
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        """Initialize database manager.

        Args:
            database_url: Database connection URL.
            pool_size: Connection pool size (ignored for SQLite).
            max_overflow: Maximum overflow connections (ignored for SQLite).
            echo: Echo SQL statements for debugging.
        """
        self.database_url = normalize_async_database_url(database_url)
        self._options = _engine_options(
            self.database_url, pool_size=pool_size, max_overflow=max_overflow, echo=echo
        )
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.database_url, **self._options)
            self._sessions = async_sessionmaker(bind=self._engine, expire_on_commit=False)
        return self._engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session that commits on clean exit and rolls back on error."""
        if self._sessions is None:
            _ = self.engine
        assert self._sessions is not None

        session = self._sessions()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def init_schema_async(self) -> None:
        """Create missing tables.

        Production schemas are managed with Alembic; this is for tests and
        throwaway local databases.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema initialized")

    async def dispose_async(self) -> None:
        """Close every pooled connection. The manager can be reused afterwards."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None
        logger.info("Database connections disposed")
