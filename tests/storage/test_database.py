"""Tests for the database manager."""

from __future__ import annotations

import pytest

from escrow_reconciler.config import DatabaseSettings
from escrow_reconciler.storage.database import DatabaseManager, normalize_async_database_url
from escrow_reconciler.storage.repos import OrderRepository


class TestDatabaseManager:
    """Tests for DatabaseManager."""

    def test_from_settings(self) -> None:
        settings = DatabaseSettings(
            DATABASE_URL="postgresql+asyncpg://escrow@db:5432/escrow",
            DATABASE_POOL_SIZE=3,
            DATABASE_MAX_OVERFLOW=1,
        )

        manager = DatabaseManager.from_settings(settings)

        assert manager.database_url == "postgresql+asyncpg://escrow@db:5432/escrow"
        assert manager._pool_size == 3
        assert manager._max_overflow == 1
        assert manager.is_sqlite is False

    def test_plain_postgres_url_uses_asyncpg(self) -> None:
        assert normalize_async_database_url("postgresql://db/escrow") == "postgresql+asyncpg://db/escrow"
        assert normalize_async_database_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"

    @pytest.mark.asyncio
    async def test_session_rolls_back_on_error(self, db: DatabaseManager) -> None:
        with pytest.raises(RuntimeError):
            async with db.get_async_session() as session:
                await OrderRepository(session).create("order-1")
                raise RuntimeError("reconciliation failed")

        async with db.get_async_session() as session:
            assert await OrderRepository(session).get("order-1") is None
