"""Interfaces of the external collaborators the pipeline depends on.

The pipeline components only talk to these protocols. Concrete adapters live
in releasegate.integrations (GitHub, n8n), releasegate.pipeline (working
copies), releasegate.database (SQL status store), and the orchestrator
package itself (in-memory status store, escalation queue).
"""

from __future__ import annotations

from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from releasegate.config import MergeStrategy
    from releasegate.orchestrator.ci_monitor import CIStatusSnapshot
    from releasegate.orchestrator.escalation import (
        Escalation,
        EscalationReason,
        EscalationResolution,
    )
    from releasegate.orchestrator.state_machine import ChangeRequest, ChangeRequestSpec


class VersionControlHost(Protocol):
    """Hosts change requests, their CI checks, and branches."""

    async def create_or_get_change_request(self, spec: ChangeRequestSpec) -> ChangeRequest:
        ...

    async def get_change_request(self, change_request_id: str) -> ChangeRequest:
        ...

    async def fetch_ci_status(self, change_request_id: str) -> CIStatusSnapshot:
        ...

    async def merge_change_request(
        self,
        change_request_id: str,
        strategy: MergeStrategy,
        commit_title: str | None = None,
        commit_message: str | None = None,
    ) -> str | None:
        """Merge and return the merge commit SHA, if the host reports one."""
        ...

    async def delete_branch(self, ref: str) -> None:
        ...

    async def rerun_check(self, check_id: str) -> None:
        ...


class WorkspaceManager(Protocol):
    """Owns local working copies of work items."""

    async def cleanup_working_copy(self, work_item_id: str) -> bool:
        ...


class StatusTransaction(Protocol):
    """Operations available inside one atomic status store transaction."""

    async def mark_complete(self, work_item_id: str) -> bool:
        """Mark an item complete; return False if it already was."""
        ...

    async def query_unblocked(self, work_item_id: str) -> list[str]:
        """Dependents of work_item_id whose prerequisites are all complete and
        which have not been triggered yet."""
        ...

    async def mark_triggered(self, work_item_ids: Sequence[str]) -> None:
        ...


class StatusStore(Protocol):
    """Shared work item status store used by the dependency trigger."""

    async def register(
        self, work_item_id: str, prerequisites: Sequence[str] = (), title: str = ""
    ) -> None:
        ...

    def transaction(self) -> AbstractAsyncContextManager[StatusTransaction]:
        ...


class EscalationChannel(Protocol):
    """Human-in-the-loop channel."""

    async def raise_escalation(
        self,
        work_item_id: str,
        reason: EscalationReason,
        rationale: Sequence[str],
    ) -> Escalation:
        ...

    async def resolve(
        self,
        escalation_id: str,
        resolution: EscalationResolution,
        note: str | None = None,
    ) -> Escalation:
        ...

    async def cancel(self, escalation_id: str) -> Escalation:
        ...

    def get(self, escalation_id: str) -> Escalation | None:
        ...
