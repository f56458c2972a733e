"""SQLAlchemy ORM models for ReleaseGate."""

from releasegate.database.models.base import Base, TimestampMixin
from releasegate.database.models.work_item import WorkItem

__all__ = [
    "Base",
    "TimestampMixin",
    "WorkItem",
]
