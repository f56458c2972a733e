"""Work item model backing the persistent dependency status store.

Each row holds one work item's dependency status and the ids of its
prerequisites. Prerequisites are stored as a JSON list so the same schema
works on PostgreSQL and on SQLite in tests.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, Text
from sqlalchemy.orm import Mapped, mapped_column

from releasegate.database.models.base import Base, TimestampMixin
from releasegate.orchestrator.dependency_trigger import WorkItemStatus


class WorkItem(TimestampMixin, Base):
    """A work item tracked by the dependency trigger.

    Attributes:
        id: Work item identifier (primary key).
        title: Short description of the work item.
        status: Dependency status (blocked, ready, in_progress, done).
        prerequisites: Ids of work items that must be done first.
        triggered_at: When the ready signal was emitted.
        completed_at: When the work item was released.
        created_at: Row creation timestamp (from TimestampMixin).
        updated_at: Last modification timestamp (from TimestampMixin).
    """

    __tablename__ = "work_items"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[WorkItemStatus] = mapped_column(
        Enum(
            WorkItemStatus,
            name="work_item_status",
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        default=WorkItemStatus.BLOCKED,
        nullable=False,
        index=True,
    )
    prerequisites: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    triggered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
