"""Database configuration, session management and store selection."""

from collections.abc import AsyncGenerator
from functools import lru_cache
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from recon_matching.config import settings

if TYPE_CHECKING:
    from recon_matching.services.store import MatchStore


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    """Create the async engine on first use so the memory backend never needs a driver."""
    return create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=10,  # Max persistent connections
        max_overflow=20,  # Additional transient connections under load
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


@lru_cache(maxsize=1)
def get_session_maker() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for database session."""
    async with get_session_maker()() as session:
        try:
            yield session
        finally:
            await session.close()


@lru_cache(maxsize=1)
def get_memory_store() -> "MatchStore":
    """Process-wide in-memory store used when STORE_BACKEND=memory."""
    from recon_matching.services.store import InMemoryMatchStore

    return InMemoryMatchStore()


async def get_store() -> AsyncGenerator["MatchStore", None]:
    """Dependency yielding the configured match store."""
    if settings.store_backend == "sql":
        from recon_matching.services.sql_store import SqlMatchStore

        async for session in get_db():
            yield SqlMatchStore(session)
        return
    yield get_memory_store()


async def init_db() -> None:
    """Create tables for the SQL backend.

    The memory backend needs no schema, so this is a no-op there.
    """
    from recon_matching import models  # noqa: F401
    from recon_matching.logger import get_logger

    logger = get_logger(__name__)
    if settings.store_backend != "sql":
        logger.info("Database init skipped", store_backend=settings.store_backend)
        return

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database initialized", store_backend=settings.store_backend)
