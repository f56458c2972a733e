"""Human-in-the-loop escalation queue.

Escalations are raised when the review decision is escalate, when CI does
not finish in time, when the host or a merge fails terminally, and when a
change waits for a manual merge. Each escalation holds
human-readable rationale lines and stays pending until a human resolves it
(approve, retry, or reject) or it is cancelled.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Sequence
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, Field

from releasegate.errors import PipelineStateError

if TYPE_CHECKING:
    from releasegate.integrations.n8n import N8nClient


class EscalationReason(str, Enum):
    """Why a work item was escalated.

    Values:
        REVIEW_DECISION: The review decision engine returned escalate.
        CI_TIMEOUT: CI did not finish before the deadline.
        MERGE_FAILURE: The merge failed permanently or kept failing.
        HOST_FAILURE: The version-control host rejected or kept failing a request.
        MANUAL_REVIEW: Automatic merge is disabled; a human merges after CI passes.
    """

    REVIEW_DECISION = "review_decision"
    CI_TIMEOUT = "ci_timeout"
    MERGE_FAILURE = "merge_failure"
    HOST_FAILURE = "host_failure"
    MANUAL_REVIEW = "manual_review"


class EscalationStatus(str, Enum):
    """Lifecycle of an escalation."""

    PENDING = "pending"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class EscalationResolution(str, Enum):
    """A human's answer to an escalation.

    Values:
        APPROVE: Continue the pipeline from the stage that escalated.
        RETRY: Return the work item for fixes.
        REJECT: Stop processing the work item.
    """

    APPROVE = "approve"
    RETRY = "retry"
    REJECT = "reject"


class Escalation(BaseModel):
    """One request for a human decision.

    Attributes:
        id: Escalation identifier (esc-<uuid>)
        work_item_id: Escalated work item
        reason: Why it was escalated
        rationale: Human-readable explanation, one line per factor
        status: Current status
        resolution: The human's answer once resolved
        note: Free-form note supplied with the answer
        created_at: When the escalation was raised
        resolved_at: When it was resolved or cancelled
    """

    id: str = Field(default_factory=lambda: f"esc-{uuid.uuid4()}")
    work_item_id: str
    reason: EscalationReason
    rationale: list[str] = Field(default_factory=list)
    status: EscalationStatus = EscalationStatus.PENDING
    resolution: EscalationResolution | None = None
    note: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    resolved_at: datetime | None = None

    def render(self) -> str:
        """Render the escalation as text for a human reviewer."""
        lines = [f"Work item {self.work_item_id} needs a decision ({self.reason.value})"]
        lines.extend(f"  - {line}" for line in self.rationale)
        return "\n".join(lines)


class EscalationMetrics(BaseModel):
    """Aggregate escalation statistics."""

    total: int = 0
    pending: int = 0
    resolved: int = 0
    cancelled: int = 0
    by_reason: dict[EscalationReason, int] = Field(default_factory=dict)
    average_resolution_seconds: float | None = None


class EscalationQueue:
    """In-memory escalation channel with optional webhook notification.

    Args:
        notifier: n8n client notified when escalations are raised or resolved.
        logger: Optional structlog logger; defaults to the module logger.
    """

    def __init__(
        self,
        notifier: N8nClient | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._escalations: dict[str, Escalation] = {}
        self._lock = asyncio.Lock()
        self._notifier = notifier
        self._logger = (logger or structlog.get_logger(__name__)).bind(
            component="EscalationQueue"
        )

    async def raise_escalation(
        self,
        work_item_id: str,
        reason: EscalationReason,
        rationale: Sequence[str],
    ) -> Escalation:
        """Record a new pending escalation and notify, if configured.

        Args:
            work_item_id: Escalated work item.
            reason: Why it was escalated.
            rationale: Human-readable explanation lines.

        Returns:
            The new escalation.
        """
        escalation = Escalation(
            work_item_id=work_item_id, reason=reason, rationale=list(rationale)
        )
        async with self._lock:
            self._escalations[escalation.id] = escalation

        self._logger.warning(
            "escalation_raised",
            escalation_id=escalation.id,
            work_item_id=work_item_id,
            reason=reason.value,
            rationale=escalation.rationale,
        )
        if self._notifier is not None:
            await self._notifier.notify_escalation_raised(escalation)
        return escalation

    async def resolve(
        self,
        escalation_id: str,
        resolution: EscalationResolution,
        note: str | None = None,
    ) -> Escalation:
        """Record a human's answer to a pending escalation.

        Raises:
            KeyError: If the escalation does not exist.
            PipelineStateError: If the escalation is no longer pending.
        """
        async with self._lock:
            escalation = self._pending(escalation_id)
            escalation.status = EscalationStatus.RESOLVED
            escalation.resolution = resolution
            escalation.note = note
            escalation.resolved_at = datetime.now(timezone.utc)

        self._logger.info(
            "escalation_resolved",
            escalation_id=escalation_id,
            work_item_id=escalation.work_item_id,
            resolution=resolution.value,
        )
        if self._notifier is not None:
            await self._notifier.notify_escalation_resolved(escalation)
        return escalation

    async def cancel(self, escalation_id: str) -> Escalation:
        """Cancel a pending escalation without a resolution."""
        async with self._lock:
            escalation = self._pending(escalation_id)
            escalation.status = EscalationStatus.CANCELLED
            escalation.resolved_at = datetime.now(timezone.utc)

        self._logger.info("escalation_cancelled", escalation_id=escalation_id)
        return escalation

    def get(self, escalation_id: str) -> Escalation | None:
        return self._escalations.get(escalation_id)

    def pending(self, work_item_id: str | None = None) -> list[Escalation]:
        """Pending escalations, oldest first, optionally for one work item."""
        items = [
            e
            for e in self._escalations.values()
            if e.status is EscalationStatus.PENDING
            and (work_item_id is None or e.work_item_id == work_item_id)
        ]
        return sorted(items, key=lambda e: e.created_at)

    def get_metrics(self) -> EscalationMetrics:
        escalations = list(self._escalations.values())
        by_reason: dict[EscalationReason, int] = {}
        for escalation in escalations:
            by_reason[escalation.reason] = by_reason.get(escalation.reason, 0) + 1

        durations = [
            (e.resolved_at - e.created_at).total_seconds()
            for e in escalations
            if e.status is EscalationStatus.RESOLVED and e.resolved_at is not None
        ]
        return EscalationMetrics(
            total=len(escalations),
            pending=sum(1 for e in escalations if e.status is EscalationStatus.PENDING),
            resolved=len(durations),
            cancelled=sum(1 for e in escalations if e.status is EscalationStatus.CANCELLED),
            by_reason=by_reason,
            average_resolution_seconds=sum(durations) / len(durations) if durations else None,
        )

    def _pending(self, escalation_id: str) -> Escalation:
        escalation = self._escalations.get(escalation_id)
        if escalation is None:
            raise KeyError(f"Escalation {escalation_id} not found")
        if escalation.status is not EscalationStatus.PENDING:
            raise PipelineStateError(
                f"Escalation {escalation_id} is already {escalation.status.value}"
            )
        return escalation
