"""
Database package for agentdock.

Provides SQLite async database with SQLAlchemy ORM.
"""
from .database import Base, create_engine_and_sessionmaker, init_db
from .models import SessionRecord

__all__ = [
    "Base",
    "create_engine_and_sessionmaker",
    "init_db",
    "SessionRecord",
]
