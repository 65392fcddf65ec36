"""Database configuration and connection management."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, text
from sqlalchemy.engine import Row, RowMapping
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from clinicdesk.config import settings

# Convert sync PostgreSQL URL to async
DATABASE_URL = settings.database_url.replace("postgresql://", "postgresql+asyncpg://")

if DATABASE_URL.startswith("postgresql+asyncpg://"):
    engine: AsyncEngine = create_async_engine(
        DATABASE_URL,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        connect_args={
            "server_settings": {
                "application_name": settings.app_name,
            },
        },
    )
else:
    # Local development against SQLite (aiosqlite)
    engine = create_async_engine(DATABASE_URL, echo=settings.debug)

# Async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def check_database_connection() -> bool:
    """Check if database connection is healthy."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime (naive values are taken to be UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def row_to_dict(row: Row | RowMapping | None) -> dict[str, Any] | None:
    """
    Convert a result row to a plain dict with UTC-aware timestamps.

    SQLite hands timestamps back naive while PostgreSQL returns them aware,
    so every row leaving the persistence layer goes through here.
    """
    if row is None:
        return None
    mapping = row._mapping if isinstance(row, Row) else row
    return {
        key: ensure_utc(value) if isinstance(value, datetime) else value
        for key, value in mapping.items()
    }


async def acquire_advisory_lock(db: AsyncSession, key: str) -> None:
    """
    Take a transaction-scoped advisory lock keyed on an arbitrary string.

    Released automatically on commit or rollback. SQLite serializes writers
    on its own, so the lock is a no-op there.
    """
    if db.bind is None or db.bind.dialect.name != "postgresql":
        return
    await db.execute(select(func.pg_advisory_xact_lock(func.hashtext(key))))
