"""Persistent work item status store on SQLAlchemy async sessions.

Each transaction runs in one database transaction. Rows read for update are
locked with SELECT ... FOR UPDATE on PostgreSQL, so releases of sibling
prerequisites in different processes still trigger a shared dependent
exactly once. Within one process transactions are also serialized with an
asyncio.Lock, which covers SQLite where row locks are not available.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from releasegate.database.models.work_item import WorkItem
from releasegate.errors import DependencyCycleError, DependencyError
from releasegate.orchestrator.dependency_trigger import DependencyGraph, WorkItemStatus

logger = structlog.get_logger(__name__)


class _SqlTransaction:
    """Status operations bound to one open session transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def mark_complete(self, work_item_id: str) -> bool:
        result = await self._session.execute(
            select(WorkItem).where(WorkItem.id == work_item_id).with_for_update()
        )
        item = result.scalar_one_or_none()
        if item is None:
            raise DependencyError(f"Unknown work item: {work_item_id}")
        if item.status is WorkItemStatus.DONE:
            return False

        item.status = WorkItemStatus.DONE
        item.completed_at = datetime.now(timezone.utc)
        await self._session.flush()
        return True

    async def query_unblocked(self, work_item_id: str) -> list[str]:
        result = await self._session.execute(
            select(WorkItem)
            .where(WorkItem.status == WorkItemStatus.BLOCKED)
            .order_by(WorkItem.id)
            .with_for_update()
        )
        dependents = [item for item in result.scalars() if work_item_id in item.prerequisites]

        unblocked = []
        for dependent in dependents:
            prereqs = set(dependent.prerequisites)
            done = await self._session.execute(
                select(WorkItem.id).where(
                    WorkItem.id.in_(prereqs),
                    WorkItem.status == WorkItemStatus.DONE,
                )
            )
            if set(done.scalars()) == prereqs:
                unblocked.append(dependent.id)
        return unblocked

    async def mark_triggered(self, work_item_ids: Sequence[str]) -> None:
        if not work_item_ids:
            return
        now = datetime.now(timezone.utc)
        result = await self._session.execute(
            select(WorkItem).where(WorkItem.id.in_(list(work_item_ids)))
        )
        for item in result.scalars():
            item.status = WorkItemStatus.READY
            item.triggered_at = now
        await self._session.flush()


class SqlStatusStore:
    """Status store persisted in the work_items table.

    Args:
        session_factory: Factory producing AsyncSession instances.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    async def register(
        self, work_item_id: str, prerequisites: Sequence[str] = (), title: str = ""
    ) -> None:
        """Insert a work item, rejecting duplicates and dependency cycles.

        The initial status is ready when every prerequisite is already done,
        blocked otherwise.

        Raises:
            DependencyError: If the work item is already registered.
            DependencyCycleError: If the prerequisites would create a cycle.
        """
        async with self._lock, self._session_factory() as session, session.begin():
            rows = (await session.execute(select(WorkItem))).scalars().all()
            if any(row.id == work_item_id for row in rows):
                raise DependencyError(f"Work item already registered: {work_item_id}")

            graph = DependencyGraph({row.id: row.prerequisites for row in rows})
            graph.add(work_item_id, prerequisites)
            cycles = graph.find_cycles()
            if cycles:
                raise DependencyCycleError(cycles)

            statuses = {row.id: row.status for row in rows}
            ready = all(statuses.get(p) is WorkItemStatus.DONE for p in prerequisites)
            session.add(
                WorkItem(
                    id=work_item_id,
                    title=title,
                    status=WorkItemStatus.READY if ready else WorkItemStatus.BLOCKED,
                    prerequisites=sorted(set(prerequisites)),
                )
            )

        logger.info(
            "work_item_stored",
            work_item_id=work_item_id,
            prerequisites=sorted(set(prerequisites)),
        )

    async def status_of(self, work_item_id: str) -> WorkItemStatus | None:
        async with self._session_factory() as session:
            item = await session.get(WorkItem, work_item_id)
            return item.status if item is not None else None

    async def list_by_status(self, status: WorkItemStatus) -> list[str]:
        """Ids of work items in the given status, sorted."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WorkItem.id).where(WorkItem.status == status).order_by(WorkItem.id)
            )
            return list(result.scalars())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_SqlTransaction]:
        async with self._lock, self._session_factory() as session, session.begin():
            yield _SqlTransaction(session)
