"""
Pytest configuration and fixtures for LW Fitness backend tests
"""

import pytest
from datetime import datetime
from typing import AsyncGenerator, Optional
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from lwfit.database import crud
from lwfit.database.models import Base, User
from lwfit.utils.time_utils import start_of_month


# Test database URL (in-memory SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def test_db_engine():
    """
    Create test database engine
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(test_db_engine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory for tests that need several sessions (concurrent requests)
    """
    return async_sessionmaker(test_db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """
    Create test database session
    """
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def make_user(db_session):
    """
    Factory creating a user whose allowance counters refer to the month of `now`

    Usage:
        user = await make_user(now=NOW, telegram_id=123)
    """
    counter = {"n": 0}

    async def _make(
        now: datetime,
        telegram_id: Optional[int] = None,
        email: Optional[str] = None,
        month_start: Optional[datetime] = None,
    ) -> User:
        counter["n"] += 1
        user = await crud.create_user(
            db_session,
            email=email or f"user{counter['n']}@example.com",
            name=f"User {counter['n']}",
            telegram_id=telegram_id,
        )
        user.current_month_start = month_start or start_of_month(now)
        await db_session.commit()
        return user

    return _make
