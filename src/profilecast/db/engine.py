"""Async SQLAlchemy engine and session factory.

Learn: SQLAlchemy 2.0 async mode — create_async_engine for connection pooling,
async_sessionmaker for per-operation sessions. The engine is built by the
PostgreSQL store on connect() rather than at import time, so the app can
run against the in-memory store without a database driver configured.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Connection pool: min 5, max 20 connections."""
    return create_async_engine(
        url,
        echo=echo,
        pool_size=5,
        max_overflow=15,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def asyncpg_dsn(url: str) -> str:
    """Convert a SQLAlchemy URL into a DSN asyncpg.connect() accepts."""
    return url.replace("postgresql+asyncpg://", "postgresql://", 1)
