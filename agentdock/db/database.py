"""
Async SQLite database connection for agentdock.

Uses SQLAlchemy async with aiosqlite for non-blocking database operations.
Engines are created by the host; nothing here is a module-level global.
"""
import logging
from pathlib import Path

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from ..config import DEFAULT_DATABASE_URL

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy ORM models."""
    pass


def create_engine_and_sessionmaker(
    database_url: str = DEFAULT_DATABASE_URL,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """
    Create an async engine and its session factory.

    Args:
        database_url: SQLAlchemy URL (sqlite+aiosqlite:///...).

    Returns:
        Tuple of (engine, session factory).
    """
    engine = create_async_engine(
        database_url,
        echo=False,
        connect_args={"check_same_thread": False},
    )
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, session_factory


async def init_db(engine: AsyncEngine) -> None:
    """
    Initialize the database.

    Creates the database directory (file databases) and all tables
    if they don't exist.
    """
    database = engine.url.database
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info(f"Database initialized at {engine.url.render_as_string(hide_password=True)}")
