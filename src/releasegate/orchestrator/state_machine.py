"""Change request lifecycle state machine.

A change request moves monotonically through its lifecycle:

    open -> ci_pending -> ci_passed -> merged
    ci_pending -> ci_failed
    (any state except merged) -> closed

merged and closed are terminal and ci_failed can only be closed; a change
request is never reopened by this core. Fixes after a CI failure are
pushed by the upstream fix loop and tracked as a new pipeline run.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

import structlog
from pydantic import BaseModel, Field


class ChangeRequestState(str, Enum):
    """Lifecycle states of a change request.

    States:
        OPEN: Created on the host, CI not yet watched.
        CI_PENDING: CI checks are being watched.
        CI_PASSED: All checks succeeded.
        CI_FAILED: At least one check failed.
        MERGED: Merged into the target branch.
        CLOSED: Closed without merging.
    """

    OPEN = "open"
    CI_PENDING = "ci_pending"
    CI_PASSED = "ci_passed"
    CI_FAILED = "ci_failed"
    MERGED = "merged"
    CLOSED = "closed"


VALID_TRANSITIONS: dict[ChangeRequestState, set[ChangeRequestState]] = {
    ChangeRequestState.OPEN: {ChangeRequestState.CI_PENDING, ChangeRequestState.CLOSED},
    ChangeRequestState.CI_PENDING: {
        ChangeRequestState.CI_PASSED,
        ChangeRequestState.CI_FAILED,
        ChangeRequestState.CLOSED,
    },
    ChangeRequestState.CI_PASSED: {ChangeRequestState.MERGED, ChangeRequestState.CLOSED},
    ChangeRequestState.CI_FAILED: {ChangeRequestState.CLOSED},
    ChangeRequestState.MERGED: set(),  # Terminal
    ChangeRequestState.CLOSED: set(),  # Terminal
}


class InvalidTransitionError(Exception):
    """Raised when an invalid change request transition is attempted.

    Attributes:
        current: The current change request state.
        target: The attempted target state.
        change_request_id: The change request that failed to transition.
    """

    def __init__(
        self,
        current: ChangeRequestState,
        target: ChangeRequestState,
        change_request_id: str | None = None,
    ):
        self.current = current
        self.target = target
        self.change_request_id = change_request_id
        msg = f"Invalid transition from {current.value} to {target.value}"
        if change_request_id:
            msg += f" for change request {change_request_id}"
        super().__init__(msg)


def validate_transition(current: ChangeRequestState, target: ChangeRequestState) -> bool:
    """Validate if a change request transition is allowed.

    Args:
        current: Current state.
        target: Target state.

    Returns:
        True if the transition is valid according to VALID_TRANSITIONS.
    """
    return target in VALID_TRANSITIONS.get(current, set())


class ChangeRequestSpec(BaseModel):
    """What the orchestrator asks the host to open for a work item.

    Attributes:
        work_item_id: Work item the change implements
        title: Change request title, also used as the squash commit title
        description: Change request body
        source_branch: Branch holding the change
        target_branch: Branch to merge into
        labels: Labels to apply
        reviewers: Reviewers to request
    """

    work_item_id: str
    title: str
    description: str = ""
    source_branch: str
    target_branch: str = "main"
    labels: list[str] = Field(default_factory=list)
    reviewers: list[str] = Field(default_factory=list)


class ChangeRequest(BaseModel):
    """A change request as tracked by the pipeline.

    Attributes:
        id: Host identifier (pull request number for GitHub)
        work_item_id: Work item the change implements
        title: Title
        description: Body
        source_branch: Branch holding the change
        target_branch: Branch to merge into
        labels: Applied labels
        reviewers: Requested reviewers
        state: Lifecycle state
        mergeable: Host's mergeability verdict, None while still computing
        head_sha: Commit at the head of the source branch
        url: Web URL of the change request
        merged_at: When the change was merged
    """

    id: str
    work_item_id: str = ""
    title: str
    description: str = ""
    source_branch: str
    target_branch: str
    labels: list[str] = Field(default_factory=list)
    reviewers: list[str] = Field(default_factory=list)
    state: ChangeRequestState = ChangeRequestState.OPEN
    mergeable: bool | None = None
    head_sha: str | None = None
    url: str | None = None
    merged_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self.state]


class ChangeRequestStateMachine:
    """Applies validated lifecycle transitions to change requests."""

    def __init__(self, logger: structlog.stdlib.BoundLogger | None = None) -> None:
        self._logger = (logger or structlog.get_logger(__name__)).bind(
            component="ChangeRequestStateMachine"
        )

    def transition(
        self, change_request: ChangeRequest, target: ChangeRequestState
    ) -> ChangeRequest:
        """Move a change request to a new state.

        Args:
            change_request: Change request to update in place.
            target: Target state.

        Returns:
            The updated change request.

        Raises:
            InvalidTransitionError: If the transition is not valid.
        """
        current = change_request.state
        if not validate_transition(current, target):
            raise InvalidTransitionError(current, target, change_request.id)

        change_request.state = target
        if target is ChangeRequestState.MERGED and change_request.merged_at is None:
            change_request.merged_at = datetime.now(timezone.utc)

        self._logger.info(
            "change_request_transition",
            change_request_id=change_request.id,
            work_item_id=change_request.work_item_id,
            from_state=current.value,
            to_state=target.value,
        )
        return change_request
