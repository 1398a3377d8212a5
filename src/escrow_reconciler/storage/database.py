"""Engine and transactional sessions for the reconciliation store.

Every unit of reconciliation work (one sync batch, one escrow's events,
one checkpoint update) runs inside a single ``get_async_session`` block,
so a failure rolls back the escrow, order and raw event rows it touched
together. Production runs on PostgreSQL through asyncpg; the tests run
the same code against aiosqlite.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from escrow_reconciler.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from escrow_reconciler.config import DatabaseSettings

logger = logging.getLogger(__name__)


def normalize_async_database_url(database_url: str) -> str:
    """Point a plain ``postgresql://`` DATABASE_URL at the asyncpg driver."""
    if database_url.startswith("postgresql://"):
        logger.warning("DATABASE_URL uses 'postgresql://'; connecting through 'postgresql+asyncpg://'")
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def create_async_db_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    return create_async_engine(normalize_async_database_url(database_url), **kwargs)


def create_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # DTOs are built from models after commit, so attributes must stay loaded.
    return async_sessionmaker(bind=engine, expire_on_commit=False)


async def init_async_db(engine: AsyncEngine) -> None:
    """Create the escrow, order, raw event and checkpoint tables.

    Deployments apply the Alembic migrations instead; this backs local
    runs and the test suite.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Reconciliation schema created")


class DatabaseManager:
    """Owns the engine for the reconciliation store and hands out sessions.

    The engine is created lazily on first use, so a manager can be built
    from settings before the database is reachable.
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        """Configure the manager; no connection is opened here.

        Args:
            database_url: PostgreSQL (or sqlite+aiosqlite) URL.
            pool_size: Connections kept open; unused for SQLite.
            max_overflow: Extra connections under load; unused for SQLite.
            echo: Log every SQL statement.
        """
        self.database_url = database_url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo

        self._async_engine: AsyncEngine | None = None
        self._async_session_factory: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, settings: DatabaseSettings, *, echo: bool = False) -> DatabaseManager:
        return cls(
            settings.url,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            echo=echo,
        )

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def _get_async_engine(self) -> AsyncEngine:
        if self._async_engine is None:
            kwargs: dict[str, Any] = {"echo": self._echo}
            if not self.is_sqlite:
                kwargs["pool_size"] = self._pool_size
                kwargs["max_overflow"] = self._max_overflow
                kwargs["pool_pre_ping"] = True
            self._async_engine = create_async_db_engine(self.database_url, **kwargs)
        return self._async_engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Open a session that commits on a clean exit.

        Any exception rolls back everything written in the block, so a
        status change and the raw event marked processed for it land
        together or not at all.
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

    async def init_schema_async(self) -> None:
        await init_async_db(self._get_async_engine())

    async def dispose_async(self) -> None:
        """Close pooled connections; the next session reconnects."""
        if self._async_engine is not None:
            await self._async_engine.dispose()
            self._async_engine = None
            self._async_session_factory = None
            logger.info("Reconciliation store connections closed")
