"""Async database session management for SQLAlchemy 2.0+.

The database only backs the fallback counter, so the pool is sized for
short bursts of single-statement transactions.
"""

from functools import lru_cache
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from quotagate.app.core.config import settings
from quotagate.app.core.logging import get_logger

logger = get_logger(__name__)

# Global session maker instance
_AsyncSessionLocal: Optional[async_sessionmaker[AsyncSession]] = None


@lru_cache(maxsize=1)
def get_async_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Get or create the async database engine (singleton).

    Args:
        database_url: Optional database URL. Uses settings if not provided.

    Returns:
        AsyncEngine instance
    """
    url = database_url or settings.database_url

    if "sqlite" in url.lower():
        engine = create_async_engine(
            url,
            echo=False,
            pool_size=settings.db_sqlite_pool_size,
            max_overflow=settings.db_sqlite_max_overflow,
        )
        logger.info(
            f"Created SQLite async engine (pool_size={settings.db_sqlite_pool_size})"
        )
    else:
        engine = create_async_engine(
            url,
            echo=False,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=settings.db_pool_pre_ping,
            connect_args={"command_timeout": settings.db_command_timeout},
        )
        logger.info(
            f"Created PostgreSQL async engine (pool_size={settings.db_pool_size}, "
            f"max_overflow={settings.db_max_overflow}, "
            f"pool_timeout={settings.db_pool_timeout}s)"
        )
    return engine


def get_async_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the async session maker bound to the global engine."""
    global _AsyncSessionLocal
    if _AsyncSessionLocal is None:
        _AsyncSessionLocal = async_sessionmaker(
            bind=get_async_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _AsyncSessionLocal


async def close_async_engine() -> None:
    """Dispose the async engine and forget the session maker.

    Call this on application shutdown to release database connections.
    """
    global _AsyncSessionLocal

    if get_async_engine.cache_info().currsize:
        engine = get_async_engine()
        try:
            await engine.dispose()
            logger.debug("Async engine disposed successfully")
        except RuntimeError:
            # Event loop mismatch: connections already gone with the old loop
            logger.debug("Engine dispose encountered RuntimeError (event loop mismatch)")

    get_async_engine.cache_clear()
    _AsyncSessionLocal = None
