"""
Alembic Migration Environment
=============================

What:  Runs the points-engine migrations against the async engine.
How:   The URL comes from points_engine.config (DATABASE_URL), never from
       alembic.ini. Importing points_engine.models registers users, books,
       book_requests, point_transactions and payment_events on Base.metadata
       for --autogenerate.

Usage (from backend/):
    alembic upgrade head
    alembic upgrade head --sql      # offline: print DDL for review
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config

import points_engine.models  # noqa: F401
from points_engine.config import Settings
from points_engine.database import Base

config = context.config
settings = Settings()

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

config.set_main_option("sqlalchemy.url", settings.database_url)

target_metadata = Base.metadata

# The ledger relies on CHECK constraints and server defaults; autogenerate
# must notice when those drift, not only column additions.
MIGRATION_OPTIONS = {
    "target_metadata": target_metadata,
    "compare_type": True,
    "compare_server_default": True,
    # SQLite cannot ALTER constraints in place
    "render_as_batch": settings.database_url.startswith("sqlite"),
}


def run_migrations_offline() -> None:
    context.configure(
        url=settings.database_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **MIGRATION_OPTIONS,
    )
    with context.begin_transaction():
        context.run_migrations()


def _migrate(connection) -> None:
    context.configure(connection=connection, **MIGRATION_OPTIONS)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
