"""Automatic merge of approved change requests.

AutoMerger lands a change request whose CI has passed, then removes its
remote source branch and asks the workspace manager to clean up the local
working copy. Host calls go through a RetryPolicy: transient failures are
retried with backoff, permanent ones (conflict, permission, closed change)
end the merge immediately. Failures are returned as a MergeResult rather
than raised so the orchestrator can route them to escalation with a
readable rationale.

Merging is idempotent. The change request is re-read first, and a change
that is already merged reports success without touching branches or working
copies, so re-invoking after a crash is safe.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel

from releasegate.config import MergeStrategy
from releasegate.errors import (
    ExternalServiceError,
    PermanentExternalError,
    PermanentFailureKind,
    RetryExhaustedError,
)
from releasegate.orchestrator.retry import RetryPolicy
from releasegate.orchestrator.state_machine import ChangeRequest, ChangeRequestState

if TYPE_CHECKING:
    from releasegate.protocols import VersionControlHost, WorkspaceManager

_HEADING = re.compile(r"^#+\s")
_IMPLEMENTATION_HEADING = re.compile(r"^#+\s*Implementation", re.IGNORECASE)
COMMIT_MESSAGE_LIMIT = 500
DEFAULT_COMMIT_MESSAGE = "See the change request description for details."


def merge_commit_message(description: str) -> str:
    """Build the merge commit body from a change request description.

    Takes the non-blank lines of the description's Implementation section,
    stopping at the next heading or once the text passes
    COMMIT_MESSAGE_LIMIT characters.
    """
    parts: list[str] = []
    in_section = False
    for line in description.splitlines():
        if _IMPLEMENTATION_HEADING.match(line):
            in_section = True
            continue
        if not in_section:
            continue
        if _HEADING.match(line):
            break
        if line.strip():
            parts.append(line)
            if len("\n".join(parts)) > COMMIT_MESSAGE_LIMIT:
                break
    return "\n".join(parts).strip() or DEFAULT_COMMIT_MESSAGE


class MergeStatus(str, Enum):
    """Outcome of a merge attempt.

    Values:
        MERGED: This call merged the change.
        ALREADY_MERGED: The change was merged before this call.
        FAILED: The change could not be merged.
    """

    MERGED = "merged"
    ALREADY_MERGED = "already_merged"
    FAILED = "failed"


class MergeResult(BaseModel):
    """Result of merging one change request.

    Attributes:
        change_request_id: Change request merged
        status: Merge outcome
        strategy: Merge method used
        merge_sha: Merge commit reported by the host
        failure_kind: Category of a permanent failure
        retries_exhausted: True when transient failures used up every attempt
        error: Failure message
        branch_deleted: Whether the source branch was deleted
        workspace_cleaned: Whether the local working copy was cleaned up
    """

    change_request_id: str
    status: MergeStatus
    strategy: MergeStrategy
    merge_sha: str | None = None
    failure_kind: PermanentFailureKind | None = None
    retries_exhausted: bool = False
    error: str | None = None
    branch_deleted: bool = False
    workspace_cleaned: bool = False

    @property
    def success(self) -> bool:
        return self.status is not MergeStatus.FAILED

    def summary(self) -> str:
        """Human-readable description of the outcome."""
        if self.status is MergeStatus.ALREADY_MERGED:
            return f"Change request {self.change_request_id} was already merged"
        if self.status is MergeStatus.MERGED:
            return (
                f"Change request {self.change_request_id} merged "
                f"({self.strategy.value}, {self.merge_sha or 'no sha reported'})"
            )
        if self.retries_exhausted:
            return (
                f"Merge of change request {self.change_request_id} kept failing "
                f"transiently: {self.error}"
            )
        kind = self.failure_kind.value if self.failure_kind else "error"
        return f"Merge of change request {self.change_request_id} failed ({kind}): {self.error}"


class AutoMerger:
    """Merges change requests and cleans up after them.

    Args:
        host: Version-control host.
        workspace: Workspace manager for local working copy cleanup, if any.
        retry_policy: Retry policy for host calls.
        strategy: Default merge method.
        delete_branch: Delete the remote source branch after merging.
        mergeable_recheck_seconds: Wait before re-reading an undetermined mergeable flag.
        request_timeout: Timeout for cleanup calls made outside the retry policy.
        sleep: Awaitable sleep; injectable for tests.
        logger: Optional structlog logger; defaults to the module logger.
    """

    def __init__(
        self,
        host: VersionControlHost,
        workspace: WorkspaceManager | None = None,
        retry_policy: RetryPolicy | None = None,
        strategy: MergeStrategy = MergeStrategy.SQUASH,
        delete_branch: bool = True,
        mergeable_recheck_seconds: float = 2.0,
        request_timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._host = host
        self._workspace = workspace
        self._retry = retry_policy or RetryPolicy()
        self.strategy = strategy
        self.delete_branch = delete_branch
        self.mergeable_recheck_seconds = mergeable_recheck_seconds
        self.request_timeout = request_timeout
        self._sleep = sleep
        self._logger = (logger or structlog.get_logger(__name__)).bind(component="AutoMerger")

    async def merge(
        self,
        change_request: ChangeRequest,
        strategy: MergeStrategy | None = None,
    ) -> MergeResult:
        """Merge a change request whose CI has passed.

        Args:
            change_request: Change request to merge.
            strategy: Merge method (defaults to the merger's strategy).

        Returns:
            MergeResult describing the outcome. Never raises for host failures.
        """
        strategy = strategy or self.strategy
        cr_id = change_request.id
        log = self._logger.bind(
            change_request_id=cr_id, work_item_id=change_request.work_item_id
        )

        try:
            current = await self._read(cr_id)

            if current.state is ChangeRequestState.MERGED:
                log.info("merge_already_done", merge_strategy=strategy.value)
                return MergeResult(
                    change_request_id=cr_id,
                    status=MergeStatus.ALREADY_MERGED,
                    strategy=strategy,
                )

            if current.state is ChangeRequestState.CLOSED:
                raise PermanentExternalError(
                    f"Change request {cr_id} is closed",
                    kind=PermanentFailureKind.CHANGE_CLOSED,
                    operation="merge_change_request",
                )

            if current.mergeable is None:
                # Host is still computing mergeability
                await self._sleep(self.mergeable_recheck_seconds)
                current = await self._read(cr_id)

            if current.mergeable is False:
                raise PermanentExternalError(
                    f"Change request {cr_id} has merge conflicts with "
                    f"{change_request.target_branch}",
                    kind=PermanentFailureKind.MERGE_CONFLICT,
                    operation="merge_change_request",
                )

            log.info("merge_started", merge_strategy=strategy.value)
            merge_sha = await self._retry.run(
                lambda: self._host.merge_change_request(
                    cr_id,
                    strategy,
                    commit_title=change_request.title,
                    commit_message=merge_commit_message(change_request.description),
                ),
                description="merge_change_request",
            )
        except PermanentExternalError as e:
            log.warning("merge_failed_permanently", failure_kind=e.kind.value, error=str(e))
            return MergeResult(
                change_request_id=cr_id,
                status=MergeStatus.FAILED,
                strategy=strategy,
                failure_kind=e.kind,
                error=str(e),
            )
        except RetryExhaustedError as e:
            log.error("merge_retries_exhausted", attempts=e.attempts, error=str(e.last_error))
            return MergeResult(
                change_request_id=cr_id,
                status=MergeStatus.FAILED,
                strategy=strategy,
                retries_exhausted=True,
                error=str(e.last_error),
            )

        log.info("merge_successful", merge_strategy=strategy.value, merge_sha=merge_sha)

        branch_deleted = False
        if self.delete_branch:
            branch_deleted = await self._delete_branch(change_request.source_branch, log)
        workspace_cleaned = await self._cleanup_workspace(change_request.work_item_id, log)

        return MergeResult(
            change_request_id=cr_id,
            status=MergeStatus.MERGED,
            strategy=strategy,
            merge_sha=merge_sha,
            branch_deleted=branch_deleted,
            workspace_cleaned=workspace_cleaned,
        )

    async def _read(self, change_request_id: str) -> ChangeRequest:
        return await self._retry.run(
            lambda: self._host.get_change_request(change_request_id),
            description="get_change_request",
        )

    async def _delete_branch(self, ref: str, log: structlog.stdlib.BoundLogger) -> bool:
        try:
            await asyncio.wait_for(self._host.delete_branch(ref), timeout=self.request_timeout)
        except (asyncio.TimeoutError, ExternalServiceError) as e:
            log.warning("branch_delete_failed", branch=ref, error=str(e) or type(e).__name__)
            return False
        log.info("branch_deleted", branch=ref)
        return True

    async def _cleanup_workspace(
        self, work_item_id: str, log: structlog.stdlib.BoundLogger
    ) -> bool:
        if self._workspace is None or not work_item_id:
            return False
        try:
            return await asyncio.wait_for(
                self._workspace.cleanup_working_copy(work_item_id),
                timeout=self.request_timeout,
            )
        except Exception as e:
            log.warning(
                "workspace_cleanup_failed",
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
            )
            return False
