"""Engine, pool and transaction management for the row store.

One ``DatabaseManager`` owns one async engine. Its connection pool is shared
by the block indexer and the query API; each ``get_async_session()`` block is
one transaction.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from nft_auction_indexer.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from nft_auction_indexer.config import DatabaseSettings

logger = logging.getLogger(__name__)

_ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def _normalize_async_database_url(database_url: str) -> str:
    for sync_prefix, async_prefix in _ASYNC_DRIVERS.items():
        if database_url.startswith(sync_prefix):
            logger.debug("Using async driver %s for %s", async_prefix, sync_prefix)
            return async_prefix + database_url[len(sync_prefix) :]
    return database_url


def create_async_db_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create the async engine for ``database_url``.

    SQLite has no sized pool, so ``pool_size`` and ``max_overflow`` are only
    passed through for PostgreSQL.
    """
    url = _normalize_async_database_url(database_url)
    if url.startswith("sqlite"):
        kwargs.pop("pool_size", None)
        kwargs.pop("max_overflow", None)
    return create_async_engine(url, **kwargs)


def create_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False)


async def init_async_db(engine: AsyncEngine) -> None:
    """Create the mirrored tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready (%s)", ", ".join(sorted(Base.metadata.tables)))


class DatabaseManager:
    """Owns the async engine and hands out transactional sessions.

    Example:
        ```python
        db = DatabaseManager.from_settings(settings.database)
        await db.init_schema_async()
        async with db.get_async_session() as session:
            await BlockRepository(session).insert_ignore(block)
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
        """Initialize the manager. The engine is created on first use.

        Args:
            database_url: Row store URL (PostgreSQL, or SQLite for local runs).
            pool_size: Connection pool size.
            max_overflow: Connections allowed beyond the pool size.
            echo: Echo SQL statements for debugging.
        """
        self.database_url = database_url
        self._engine_options: dict[str, Any] = {
            "pool_size": pool_size,
            "max_overflow": max_overflow,
            "echo": echo,
        }
        self._async_engine: AsyncEngine | None = None
        self._async_session_factory: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> DatabaseManager:
        return cls(
            settings.url,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            echo=settings.echo,
        )

    @property
    def dialect_name(self) -> str:
        return self._get_async_engine().dialect.name

    def _get_async_engine(self) -> AsyncEngine:
        if self._async_engine is None:
            self._async_engine = create_async_db_engine(self.database_url, **self._engine_options)
        return self._async_engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session scoped to one transaction.

        Commits when the block exits normally and rolls back if it raises.
        """
        if self._async_session_factory is None:
            self._async_session_factory = create_async_session_factory(self._get_async_engine())

        session = self._async_session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def ping(self) -> None:
        """Round-trip a trivial query; raises if the store is unreachable."""
        async with self._get_async_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def init_schema_async(self) -> None:
        await init_async_db(self._get_async_engine())

    async def dispose_async(self) -> None:
        """Close pooled connections. The manager can be reused afterwards."""
        if self._async_engine is None:
            return
        await self._async_engine.dispose()
        self._async_engine = None
        self._async_session_factory = None
        logger.info("Database connections closed")
