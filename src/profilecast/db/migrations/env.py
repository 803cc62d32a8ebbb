"""Alembic environment configuration.

Learn: Migrations run against STORE_URI. Only PostgreSQL stores have a
schema; the in-memory store needs none, so pointing Alembic at a
memory:// URI is an error.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config

from profilecast.config import settings
from profilecast.db.models import Base

config = context.config

url = settings.store_uri
if not url.startswith("postgresql"):
    raise RuntimeError(f"Migrations need a PostgreSQL STORE_URI, got {url!r}")
if url.startswith("postgresql://"):
    url = "postgresql+asyncpg://" + url[len("postgresql://"):]
config.set_main_option("sqlalchemy.url", url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit SQL without connecting."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection):
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
