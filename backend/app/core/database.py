"""
Database layer — async SQLAlchemy 2.0 engine and session factory.

Provides:
    • Async engine construction (asyncpg in production, aiosqlite in tests)
    • Session factory bound to an engine
    • Base model for ORM entities
    • Schema create / dispose helpers

Nothing is connected at import time: the SQL store builds its own engine
from ``settings.DATABASE_URL`` (or an explicit URL) when selected.

Usage:
    from backend.app.core.database import create_engine, create_session_factory

    engine = create_engine("sqlite+aiosqlite:///./safety.db")
    sessions = create_session_factory(engine)
    await init_db(engine)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──
def create_engine(url: Optional[str] = None) -> AsyncEngine:
    """Build an async engine; pool sizing only applies to server databases."""
    url = url or settings.DATABASE_URL
    kwargs: Dict[str, Any] = {"echo": settings.DATABASE_ECHO, "future": True}
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
        kwargs["max_overflow"] = settings.DATABASE_MAX_OVERFLOW
    return create_async_engine(url, **kwargs)


# ── Session Factory ──
def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Lifecycle ──
async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Import registers the tables on Base.metadata
    from backend.app.store import orm  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db(engine: AsyncEngine) -> None:
    """Dispose engine connections."""
    await engine.dispose()
    logger.info("Database connections closed")
