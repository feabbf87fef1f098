"""
Database layer — async SQL via SQLAlchemy 2.0.

Provides:
    • Engine construction for PostgreSQL (asyncpg) or SQLite (aiosqlite)
    • Session factory for the SQL stores
    • Base model for ORM entities and table creation at startup

The engine is only built when STORAGE_BACKEND=sql, so the in-memory
default never opens a connection.

Usage:
    from backend.app.core.database import build_engine, init_db, session_factory

    engine = build_engine("sqlite+aiosqlite:///./otp.db")
    await init_db(engine)
    async with session_factory(engine)() as session:
        ...
"""

from __future__ import annotations

import logging

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


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo)
    else:
        engine = create_async_engine(
            url,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            echo=echo,
            pool_pre_ping=True,
        )
    logger.info("Database engine created: %s", url.split("@")[-1])
    return engine


def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# ── Lifecycle ──
async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (dev/test only; production uses migrations)."""
    # Registers the delivery tables on Base.metadata
    from backend.app.delivery import orm  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")
