"""Alembic environment for the escrow reconciler schema.

The database URL is resolved the same way the service resolves it: an
explicit SQLALCHEMY_DATABASE_URL wins, otherwise DATABASE_URL is read
through DatabaseSettings (process environment or .env). Migrations always
run on an async engine.
"""

from __future__ import annotations

import asyncio
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from escrow_reconciler.config import DatabaseSettings
from escrow_reconciler.storage.database import normalize_async_database_url
from escrow_reconciler.storage.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _resolve_database_url() -> str:
    override = os.environ.get("SQLALCHEMY_DATABASE_URL")
    if override:
        return normalize_async_database_url(os.path.expandvars(override))
    return normalize_async_database_url(DatabaseSettings(_env_file=".env").url)


config.set_main_option("sqlalchemy.url", _resolve_database_url())


def _is_sqlite(url: str | None) -> bool:
    return bool(url and url.startswith("sqlite"))


def run_migrations_offline() -> None:
    """Emit SQL for the migrations without connecting."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=_is_sqlite(url),
    )
    with context.begin_transaction():
        context.run_migrations()


def _apply(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=connection.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()


async def _run_async_migrations() -> None:
    engine = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_apply)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(_run_async_migrations())
