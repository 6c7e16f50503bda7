"""
Database configuration - SQLAlchemy 2.0 Async
Project: Clinic Ledger

Defines the engine, session factory and FastAPI dependency.
"""

import logging
from typing import Any, AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from clinic_ledger.core.config import settings

logger = logging.getLogger(__name__)


def _engine_options(database_url: str) -> dict[str, Any]:
    """Pool options are only valid for server databases."""
    if database_url.startswith("sqlite"):
        return {}
    return {
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
    }


# ------------------------------------------------------------
# Async engine
# ------------------------------------------------------------
engine: AsyncEngine = create_async_engine(
    settings.database_url,
    echo=settings.debug,  # Log SQL in debug mode
    **_engine_options(settings.database_url),
)


# ------------------------------------------------------------
# Session factory
# ------------------------------------------------------------
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


def side_session(db: AsyncSession) -> AsyncSession:
    """
    Open a new session on the same engine as `db`.

    Used for work that must commit independently of the caller's
    transaction: sequence increments and notifications.
    """
    return AsyncSession(
        bind=db.bind,
        expire_on_commit=False,
        autoflush=False,
    )


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency.

    Opens one database session per request and closes it afterwards.

    Yields:
        AsyncSession: Async database session

    Example:
        @router.get("/invoices")
        async def list_invoices(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db() -> None:
    """Check that the database is reachable."""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connection established")
    except Exception as e:
        logger.error("Database connection failed: %s", e)
        raise


async def close_db() -> None:
    """Dispose the engine on shutdown."""
    await engine.dispose()
    logger.info("Database connections closed")
