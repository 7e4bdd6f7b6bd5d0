"""
SQLAlchemy async database client for the local durable outbox.

Provides async connection management using SQLAlchemy Core with aiosqlite.
"""

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from .config import get_outbox_database_url, is_dev_mode
from .tables import metadata

# Module-level engine (created on first use)
_engine: AsyncEngine | None = None


def create_engine_for(database_url: str) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    For file-backed SQLite the parent directory is created so the outbox
    can be opened on a fresh machine.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
        Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    return create_async_engine(
        database_url,
        echo=is_dev_mode() or os.environ.get("SQL_ECHO", "").lower() == "true",
    )


def get_engine() -> AsyncEngine:
    """Get or create the async SQLAlchemy engine singleton."""
    global _engine
    if _engine is None:
        _engine = create_engine_for(get_outbox_database_url())
    return _engine


async def init_schema(engine: AsyncEngine | None = None) -> None:
    """Create outbox tables if they don't exist."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


@asynccontextmanager
async def get_connection(
    engine: AsyncEngine | None = None,
) -> AsyncGenerator[AsyncConnection, None]:
    """
    Get an async database connection.

    Usage:
        async with get_connection() as conn:
            result = await conn.execute(select(progress_outbox))
            row = result.mappings().first()
    """
    engine = engine or get_engine()
    async with engine.connect() as conn:
        yield conn


@asynccontextmanager
async def get_transaction(
    engine: AsyncEngine | None = None,
) -> AsyncGenerator[AsyncConnection, None]:
    """
    Get an async database connection with automatic transaction management.
    Commits on success, rolls back on exception.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        yield conn


async def close_engine() -> None:
    """Close the engine and all connections. Call on shutdown."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
