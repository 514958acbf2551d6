"""
Database configuration and session management

The database only backs the read-only shipping catalog (zones, carriers,
methods). DATABASE_URL is optional, so the engine is created on first use.
"""
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.core.config import settings

Base = declarative_base()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def _pool_config() -> dict:
    if settings.DATABASE_URL.startswith("sqlite"):
        return {}
    if settings.ENVIRONMENT == "production":
        return {
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
            "pool_recycle": settings.DB_POOL_RECYCLE,
            "pool_pre_ping": True,
        }
    return {
        "pool_size": 2,
        "max_overflow": 5,
        "pool_pre_ping": True,
    }


def get_session_factory() -> Optional[async_sessionmaker]:
    """Return the session factory, or None when no database is configured."""
    global _engine, _session_factory

    if not settings.DATABASE_URL:
        return None

    if _session_factory is None:
        _engine = create_async_engine(
            settings.DATABASE_URL,
            echo=settings.DEBUG,
            **_pool_config(),
        )
        _session_factory = async_sessionmaker(
            _engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


@asynccontextmanager
async def session_scope(session_factory: async_sessionmaker):
    """
    Read-only session context.

    Usage:
        async with session_scope(factory) as db:
            result = await db.execute(...)
    """
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def dispose_engine():
    """Dispose the engine on shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
