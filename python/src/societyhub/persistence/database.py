"""
Database engine and session management.

One async engine per application; the session factory is handed to the SQL
gateway. SQLite URLs (development and tests) share a single connection so
an in-memory database survives across sessions.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from ..core.config import Settings, settings as default_settings
from .. import models  # noqa: F401  (registers tables on SQLModel.metadata)

logger = logging.getLogger(__name__)


def create_engine(config: Optional[Settings] = None, url: Optional[str] = None) -> AsyncEngine:
    """
    Create the async engine for the configured database.
    
    Args:
        config: Settings to read DATABASE_URL / DATABASE_ECHO from
        url: Explicit URL overriding the settings
    """
    config = config or default_settings
    database_url = url or config.DATABASE_URL
    
    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            echo=config.DATABASE_ECHO,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    
    return create_async_engine(
        database_url,
        echo=config.DATABASE_ECHO,
        pool_pre_ping=True,      # Verify connections before using
        pool_size=10,
        max_overflow=5,
        pool_recycle=3600,       # Recycle after 1 hour
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory used by the SQL gateway."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """
    Create tables.
    
    NOTE: Development and tests only; production schemas are managed by the
    store's own migrations.
    """
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    
    logger.info("Database tables created successfully")


async def close_db(engine: AsyncEngine) -> None:
    """Dispose of the engine's connections on shutdown."""
    logger.info("Closing database connections...")
    await engine.dispose()
    logger.info("Database connections closed successfully")
