"""Work items table for the dependency status store.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

work_item_status = sa.Enum(
    "blocked", "ready", "in_progress", "done",
    name="work_item_status",
)


def upgrade() -> None:
    op.create_table(
        "work_items",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("title", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", work_item_status, nullable=False),
        sa.Column("prerequisites", sa.JSON(), nullable=False),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_work_items_status", "work_items", ["status"])


def downgrade() -> None:
    op.drop_index("ix_work_items_status", table_name="work_items")
    op.drop_table("work_items")
    work_item_status.drop(op.get_bind(), checkfirst=True)
