"""
Fixtures for service tests.

Provides:
- A temporary sessions directory
- A temporary-file SQLite database (shared by every AsyncSession, unlike
  :memory: which is private to one connection)
"""
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from agentdock.db.database import Base, create_engine_and_sessionmaker, init_db
from agentdock.services.session_service import SessionService


@pytest.fixture
def temp_sessions_dir(tmp_path: Path) -> Path:
    """Parent directory for auto-created session working directories."""
    path = tmp_path / "sessions"
    path.mkdir()
    return path


@pytest_asyncio.fixture
async def db_engine_and_factory(
    tmp_path: Path,
) -> AsyncGenerator[tuple[AsyncEngine, async_sessionmaker[AsyncSession]], None]:
    """Engine and session factory over a fresh database file."""
    engine, factory = create_engine_and_sessionmaker(
        f"sqlite+aiosqlite:///{tmp_path / 'data' / 'test.db'}"
    )
    await init_db(engine)

    yield engine, factory

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine_and_factory) -> async_sessionmaker[AsyncSession]:
    return db_engine_and_factory[1]


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """A database session for the test body."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def service(temp_sessions_dir: Path) -> SessionService:
    return SessionService(sessions_dir=temp_sessions_dir)
