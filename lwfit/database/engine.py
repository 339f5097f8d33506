"""
Database engine for LW Fitness backend

One lazily created AsyncEngine per process; PostgreSQL (asyncpg) in
deployments, SQLite (aiosqlite) for local runs and tests.
"""

import logging
from typing import Any, AsyncGenerator, Dict

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)

from config.config import DATABASE_URL, ENVIRONMENT
from lwfit.database.models import Base

logger = logging.getLogger(__name__)


engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def _engine_options(url: str) -> Dict[str, Any]:
    """Pool settings per backend; SQLite gets the driver defaults"""
    if url.startswith("sqlite"):
        return {}

    is_production = ENVIRONMENT == "production"
    return {
        "pool_size": 10 if is_production else 5,
        "max_overflow": 20 if is_production else 10,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "connect_args": {"server_settings": {"application_name": "lwfit_api"}},
    }


def get_engine() -> AsyncEngine:
    """Get the process-wide engine, creating it on first use"""
    global engine

    if engine is None:
        engine = create_async_engine(DATABASE_URL, echo=False, **_engine_options(DATABASE_URL))
        logger.info(f"Database engine created ({engine.dialect.name}, {ENVIRONMENT})")

    return engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """
    Get the session factory

    Sessions keep attributes after commit: coin results are read from the
    committed User objects.
    """
    global AsyncSessionLocal

    if AsyncSessionLocal is None:
        AsyncSessionLocal = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    return AsyncSessionLocal


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI Dependency: one session per request

    Usage:
        async def handler(session: AsyncSession = Depends(get_session)):
            ...
    """
    async with get_session_maker()() as session:
        try:
            yield session
        except Exception as e:
            await session.rollback()
            logger.error(f"Session error: {e}", exc_info=True)
            raise


async def init_db() -> None:
    """Create missing tables (no migrations, existing tables are left alone)"""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables ready")


async def drop_db() -> None:
    """
    Drop all tables

    Raises:
        RuntimeError: In production
    """
    if ENVIRONMENT == "production":
        raise RuntimeError("Cannot drop database in production environment!")

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    logger.warning("Database tables dropped")


async def dispose_engine() -> None:
    """Close all pooled connections (application shutdown)"""
    global engine, AsyncSessionLocal

    if engine is not None:
        await engine.dispose()
        logger.info("Database engine disposed")
        engine = None
        AsyncSessionLocal = None
