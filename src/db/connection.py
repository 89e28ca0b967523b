"""Database connection management for StoreSync.

Provides asynchronous database access using SQLAlchemy's asyncio
extension. SQLite (via aiosqlite) is the default; any async driver URL
(e.g. postgresql+asyncpg://) is accepted through DATABASE_URL.

Usage:
    from src.db.connection import async_init_db, get_async_db_context

    await async_init_db()
    async with get_async_db_context() as db:
        # ... use async db session
"""

import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from src.db.models import Base


# Configuration
def get_database_url() -> str:
    """Get database URL from environment or use default SQLite.

    Precedence:
    1. DATABASE_URL (canonical)
    2. STORESYNC_DB_PATH (compat fallback, converted to sqlite URL)
    3. sqlite:///<user data dir>/storesync.db
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("STORESYNC_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    from src.utils.paths import get_default_db_path
    return f"sqlite:///{get_default_db_path()}"


def to_async_url(url: str) -> str:
    """Convert a plain sqlite URL to its aiosqlite form.

    Args:
        url: Database URL, sync or async.

    Returns:
        URL usable with create_async_engine.
    """
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def get_async_database_url() -> str:
    """Get async database URL derived from get_database_url()."""
    return to_async_url(get_database_url())


def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Configure SQLite pragmas for correctness and concurrency.

    Enables:
    - foreign_keys=ON: Referential integrity (disabled by default in SQLite).
    - journal_mode=WAL: Concurrent readers alongside the webhook, batch
      and sync writers.
    - busy_timeout: Writers wait for the lock instead of failing fast.
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA busy_timeout=5000;")
    cursor.close()


def create_engine_for_url(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, wiring SQLite pragmas when applicable.

    Args:
        url: Database URL. Plain sqlite URLs are converted to aiosqlite.
        echo: Log emitted SQL.

    Returns:
        Configured AsyncEngine.
    """
    async_url = to_async_url(url)
    engine = create_async_engine(async_url, echo=echo)
    if async_url.startswith("sqlite"):
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragma)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory every service receives.

    Args:
        engine: Engine to bind sessions to.

    Returns:
        async_sessionmaker producing AsyncSession instances.
    """
    return async_sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# Engine creation
ASYNC_DATABASE_URL = get_async_database_url()

async_engine = create_engine_for_url(
    ASYNC_DATABASE_URL,
    echo=os.environ.get("SQL_ECHO", "").lower() == "true",
)

AsyncSessionLocal = create_session_factory(async_engine)


@asynccontextmanager
async def get_async_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Async context manager for database sessions.

    Usage:
        async with get_async_db_context() as db:
            result = await db.execute(select(BatchJob))
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# Initialization functions


async def init_schema(engine: AsyncEngine) -> None:
    """Create all tables on the given engine.

    Safe to call multiple times - will not recreate existing tables.

    Args:
        engine: Target engine.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def async_init_db() -> None:
    """Create all database tables on the default engine.

    Usage:
        from src.db.connection import async_init_db
        await async_init_db()
    """
    await init_schema(async_engine)


# Cleanup functions


async def close_async_db() -> None:
    """Close the async engine and dispose of connection pool."""
    await async_engine.dispose()
