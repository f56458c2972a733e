"""Database layer for ReleaseGate.

Public API:
    get_engine: Create an AsyncEngine from DatabaseConfig.
    get_session_factory: Create an async_sessionmaker from an engine.
    SqlStatusStore: Persistent work item status store.
    Base: SQLAlchemy declarative base for all models.
"""

from releasegate.database.connection import get_engine, get_session_factory
from releasegate.database.models import Base, TimestampMixin, WorkItem
from releasegate.database.status_store import SqlStatusStore

__all__ = [
    "get_engine",
    "get_session_factory",
    "Base",
    "TimestampMixin",
    "WorkItem",
    "SqlStatusStore",
]
