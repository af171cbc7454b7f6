"""
Database engine and sessions for the orders/payments store.
Uses asyncpg with SQLAlchemy async.

One request is one transaction: the payment row and the order row it drives
commit together or not at all.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import settings

logger = logging.getLogger(__name__)


def get_database_url() -> str:
    """Get database URL without sslmode (asyncpg rejects it as a query param)."""
    url = settings.database_url
    if not url:
        return ""
    if "?sslmode=" in url:
        url = url.split("?sslmode=")[0]
    elif "&sslmode=" in url:
        url = url.replace("&sslmode=require", "").replace("&sslmode=disable", "")
    return url


def create_engine_if_configured() -> Optional[AsyncEngine]:
    """Create async engine only if DATABASE_URL is configured."""
    db_url = get_database_url()
    if not db_url:
        logger.warning("DATABASE_URL not configured. Database features disabled.")
        return None

    return create_async_engine(
        db_url,
        echo=settings.db_echo,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        # Conditional status UPDATEs must see rows committed by a concurrent
        # webhook or verify call, not a snapshot from transaction start
        isolation_level="READ COMMITTED",
    )


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Objects stay readable after commit; the ledgers re-read with
    # populate_existing whenever they need fresh state
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


# May be None if not configured
engine = create_engine_if_configured()
async_session_maker = make_session_factory(engine) if engine else None


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


def _require_session_maker() -> async_sessionmaker[AsyncSession]:
    if not async_session_maker:
        raise RuntimeError("Database not configured. Set DATABASE_URL environment variable.")
    return async_session_maker


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; commits on success, rolls back if the handler raises."""
    async with _require_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Same unit of work as get_db, for scripts outside FastAPI."""
    async with _require_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create the orders and payments tables (development only; use alembic in production)."""
    if not engine:
        logger.warning("Skipping database initialization - DATABASE_URL not configured")
        return

    # Register tables on Base.metadata
    import app.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Created tables: {', '.join(sorted(Base.metadata.tables))}")


async def close_db() -> None:
    """Close database connections."""
    if engine:
        await engine.dispose()
