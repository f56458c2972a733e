"""Cascading unlock of dependent work items after a release.

When a work item is released (merged), DependencyTrigger marks it complete
and emits a "ready" signal for every dependent whose prerequisites are now
all complete. Mark-complete, the dependent scan, and marking dependents as
triggered happen inside one status store transaction, so concurrent
releases of sibling prerequisites trigger a shared dependent exactly once.

Listeners are notified after the transaction has committed, never while
the store is locked.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel

from releasegate.errors import DependencyCycleError, DependencyError

if TYPE_CHECKING:
    from releasegate.protocols import StatusStore


class WorkItemStatus(str, Enum):
    """Dependency status of a work item.

    Values:
        BLOCKED: Waiting for at least one prerequisite.
        READY: All prerequisites complete; ready signal emitted.
        IN_PROGRESS: Picked up by a worker.
        DONE: Released.
    """

    BLOCKED = "blocked"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class UnblockedItem(BaseModel):
    """A work item unblocked by a release.

    Attributes:
        work_item_id: The unblocked work item
        released_by: The release that completed its last prerequisite
        triggered_at: When the ready signal was emitted
    """

    work_item_id: str
    released_by: str
    triggered_at: datetime


ReadyListener = Callable[[list[UnblockedItem]], Awaitable[None]]


# ---------------------------------------------------------------------------
# Dependency graph
# ---------------------------------------------------------------------------


class DependencyGraph:
    """Work item id to prerequisite id set, with reverse lookup.

    Args:
        prerequisites: Initial mapping of work item to prerequisites.
    """

    def __init__(self, prerequisites: Mapping[str, Iterable[str]] | None = None) -> None:
        self._prerequisites: dict[str, frozenset[str]] = {}
        for work_item_id, prereqs in (prerequisites or {}).items():
            self.add(work_item_id, prereqs)

    def __contains__(self, work_item_id: object) -> bool:
        return work_item_id in self._prerequisites

    def __len__(self) -> int:
        return len(self._prerequisites)

    def add(self, work_item_id: str, prerequisites: Iterable[str] = ()) -> None:
        """Add or replace a work item's prerequisites."""
        prereqs = frozenset(prerequisites)
        if work_item_id in prereqs:
            raise DependencyCycleError([[work_item_id, work_item_id]])
        self._prerequisites[work_item_id] = prereqs

    def prerequisites_of(self, work_item_id: str) -> frozenset[str]:
        return self._prerequisites.get(work_item_id, frozenset())

    def dependents_of(self, work_item_id: str) -> list[str]:
        """Work items that list work_item_id as a prerequisite, sorted."""
        return sorted(
            item for item, prereqs in self._prerequisites.items() if work_item_id in prereqs
        )

    def copy(self) -> DependencyGraph:
        return DependencyGraph(self._prerequisites)

    def find_cycles(self) -> list[list[str]]:
        """Find circular dependencies with a depth-first search.

        Returns:
            Each cycle as a list of ids starting and ending with the same id.
        """
        visiting: set[str] = set()
        visited: set[str] = set()
        path: list[str] = []
        cycles: list[list[str]] = []

        def visit(node: str) -> None:
            if node in visiting:
                cycles.append(path[path.index(node):] + [node])
                return
            if node in visited:
                return
            visiting.add(node)
            path.append(node)
            for prereq in sorted(self.prerequisites_of(node)):
                visit(prereq)
            path.pop()
            visiting.discard(node)
            visited.add(node)

        for node in sorted(self._prerequisites):
            visit(node)
        return cycles


# ---------------------------------------------------------------------------
# In-memory status store
# ---------------------------------------------------------------------------


class _InMemoryTransaction:
    """Buffers status writes and applies them when the transaction commits."""

    def __init__(self, store: InMemoryStatusStore) -> None:
        self._store = store
        self._writes: dict[str, WorkItemStatus] = {}

    def _status(self, work_item_id: str) -> WorkItemStatus | None:
        if work_item_id in self._writes:
            return self._writes[work_item_id]
        return self._store.statuses.get(work_item_id)

    async def mark_complete(self, work_item_id: str) -> bool:
        status = self._status(work_item_id)
        if status is None:
            raise DependencyError(f"Unknown work item: {work_item_id}")
        if status is WorkItemStatus.DONE:
            return False
        self._writes[work_item_id] = WorkItemStatus.DONE
        return True

    async def query_unblocked(self, work_item_id: str) -> list[str]:
        unblocked = []
        for dependent in self._store.graph.dependents_of(work_item_id):
            if self._status(dependent) is not WorkItemStatus.BLOCKED:
                continue
            prereqs = self._store.graph.prerequisites_of(dependent)
            if all(self._status(p) is WorkItemStatus.DONE for p in prereqs):
                unblocked.append(dependent)
        return unblocked

    async def mark_triggered(self, work_item_ids: Sequence[str]) -> None:
        for work_item_id in work_item_ids:
            self._writes[work_item_id] = WorkItemStatus.READY

    def commit(self) -> None:
        self._store.statuses.update(self._writes)


class InMemoryStatusStore:
    """Process-local status store; transactions are serialized by an asyncio.Lock."""

    def __init__(self) -> None:
        self.graph = DependencyGraph()
        self.statuses: dict[str, WorkItemStatus] = {}
        self.titles: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def register(
        self, work_item_id: str, prerequisites: Sequence[str] = (), title: str = ""
    ) -> None:
        """Register a work item and its prerequisites.

        Raises:
            DependencyError: If the work item is already registered.
            DependencyCycleError: If the prerequisites would create a cycle.
        """
        async with self._lock:
            if work_item_id in self.graph:
                raise DependencyError(f"Work item already registered: {work_item_id}")
            candidate = self.graph.copy()
            candidate.add(work_item_id, prerequisites)
            cycles = candidate.find_cycles()
            if cycles:
                raise DependencyCycleError(cycles)

            self.graph = candidate
            self.titles[work_item_id] = title
            ready = all(self.statuses.get(p) is WorkItemStatus.DONE for p in prerequisites)
            self.statuses[work_item_id] = WorkItemStatus.READY if ready else WorkItemStatus.BLOCKED

    def status_of(self, work_item_id: str) -> WorkItemStatus | None:
        return self.statuses.get(work_item_id)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_InMemoryTransaction]:
        async with self._lock:
            tx = _InMemoryTransaction(self)
            yield tx
            tx.commit()


# ---------------------------------------------------------------------------
# Trigger
# ---------------------------------------------------------------------------


class DependencyTrigger:
    """Advances the dependency graph when a work item is released.

    Args:
        store: Shared status store.
        listeners: Callbacks receiving each non-empty batch of unblocked items.
        logger: Optional structlog logger; defaults to the module logger.
    """

    def __init__(
        self,
        store: StatusStore,
        listeners: Sequence[ReadyListener] = (),
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._store = store
        self._listeners: list[ReadyListener] = list(listeners)
        self._logger = (logger or structlog.get_logger(__name__)).bind(
            component="DependencyTrigger"
        )

    def add_listener(self, listener: ReadyListener) -> None:
        self._listeners.append(listener)

    async def register(
        self, work_item_id: str, prerequisites: Sequence[str] = (), title: str = ""
    ) -> None:
        """Register a work item with its prerequisites in the status store."""
        await self._store.register(work_item_id, prerequisites, title=title)
        self._logger.info(
            "work_item_registered",
            work_item_id=work_item_id,
            prerequisites=sorted(prerequisites),
        )

    async def on_released(self, work_item_id: str) -> list[UnblockedItem]:
        """Mark a work item released and emit ready signals for unblocked dependents.

        Args:
            work_item_id: The released work item.

        Returns:
            Dependents unblocked by this release; empty if the item was
            already complete or nothing became ready.

        Raises:
            DependencyError: If the work item is unknown to the store.
        """
        async with self._store.transaction() as tx:
            newly_complete = await tx.mark_complete(work_item_id)
            ready_ids: list[str] = []
            if newly_complete:
                ready_ids = await tx.query_unblocked(work_item_id)
                if ready_ids:
                    await tx.mark_triggered(ready_ids)

        if not newly_complete:
            self._logger.info("work_item_already_released", work_item_id=work_item_id)
            return []

        now = datetime.now(timezone.utc)
        unblocked = [
            UnblockedItem(work_item_id=item_id, released_by=work_item_id, triggered_at=now)
            for item_id in ready_ids
        ]
        self._logger.info(
            "dependencies_triggered",
            work_item_id=work_item_id,
            unblocked=ready_ids,
            count=len(ready_ids),
        )

        if unblocked:
            await self._notify(unblocked)
        return unblocked

    async def _notify(self, unblocked: list[UnblockedItem]) -> None:
        for listener in self._listeners:
            try:
                await listener(unblocked)
            except Exception as e:
                # Items are already marked triggered; the return value stays authoritative
                self._logger.error(
                    "ready_listener_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    work_item_ids=[item.work_item_id for item in unblocked],
                )
