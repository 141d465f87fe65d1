"""Async database engine for the document store backend.

Uses the SQLAlchemy 2.0 asyncio extension. PostgreSQL (asyncpg) is the
production target; any async dialect works, SQLite (aiosqlite) included.
"""

from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from blobvault.config import settings

# Module-level engine (initialized lazily)
_engine: AsyncEngine | None = None


def create_engine(database_url: str | None = None) -> AsyncEngine:
    """Create an async engine for ``database_url`` (defaults to settings).

    Pool settings only apply to server databases; SQLite keeps its default
    pool.
    """
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        return create_async_engine(url)

    return create_async_engine(
        url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,  # Recycle connections after 30 minutes
        pool_pre_ping=True,  # Verify connection health
        echo=settings.env == "dev",  # Log SQL in dev
    )


def get_engine() -> AsyncEngine:
    """Get or create the shared async engine."""
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


async def close_db() -> None:
    """Dispose of the shared engine."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None


async def health_check(engine: AsyncEngine | None = None) -> bool:
    """Check database connectivity."""
    try:
        async with (engine or get_engine()).connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
