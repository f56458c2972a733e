"""n8n webhook client for release and escalation notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

from releasegate.logging import get_logger

if TYPE_CHECKING:
    from releasegate.config import NotificationsConfig
    from releasegate.orchestrator.auto_merger import MergeResult
    from releasegate.orchestrator.ci_monitor import CIResult
    from releasegate.orchestrator.dependency_trigger import UnblockedItem
    from releasegate.orchestrator.escalation import Escalation


class N8nEventType(str, Enum):
    """Types of events sent to n8n workflows."""

    ESCALATION_RAISED = "escalation_raised"
    ESCALATION_RESOLVED = "escalation_resolved"
    CHANGE_MERGED = "change_merged"
    CI_FAILED = "ci_failed"
    WORK_ITEMS_UNBLOCKED = "work_items_unblocked"


@dataclass
class N8nConfig:
    """Configuration for n8n webhook integration."""

    webhook_url: str
    auth_header: str | None = None  # Optional Authorization header
    timeout_seconds: int = 30
    enabled: bool = True

    @classmethod
    def from_settings(cls, settings: NotificationsConfig) -> N8nConfig:
        return cls(
            webhook_url=settings.webhook_url,
            auth_header=settings.auth_header,
            timeout_seconds=settings.timeout_seconds,
            enabled=settings.enabled,
        )


@dataclass
class N8nPayload:
    """Standard payload format for n8n webhooks."""

    event_type: N8nEventType
    timestamp: datetime
    work_item_id: str | None = None
    change_request_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert payload to dictionary for JSON serialization."""
        return {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "work_item_id": self.work_item_id,
            "change_request_id": self.change_request_id,
            "data": self.data,
        }


class N8nClient:
    """Client for sending webhook notifications to n8n workflows.

    Notification failures are logged and reported through the return value;
    they never interrupt the pipeline.
    """

    def __init__(self, config: N8nConfig) -> None:
        self.config = config
        self.logger = get_logger(__name__)
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send(self, payload: N8nPayload) -> bool:
        """Send payload to n8n webhook.

        Returns True if successful, False otherwise.
        """
        if not self.config.enabled:
            self.logger.debug("n8n_disabled", event_type=payload.event_type.value)
            return True

        try:
            client = await self._get_client()
            headers = {"Content-Type": "application/json"}
            if self.config.auth_header:
                headers["Authorization"] = self.config.auth_header

            response = await client.post(
                self.config.webhook_url,
                json=payload.to_dict(),
                headers=headers,
            )
        except httpx.RequestError as e:
            self.logger.error(
                "n8n_webhook_error",
                event_type=payload.event_type.value,
                error=str(e),
            )
            return False

        if response.is_success:
            self.logger.info(
                "n8n_webhook_sent",
                event_type=payload.event_type.value,
                status_code=response.status_code,
            )
            return True

        self.logger.warning(
            "n8n_webhook_failed",
            event_type=payload.event_type.value,
            status_code=response.status_code,
            response_text=response.text[:200],
        )
        return False

    async def notify_escalation_raised(self, escalation: Escalation) -> bool:
        """Notify n8n that a work item needs a human decision."""
        payload = N8nPayload(
            event_type=N8nEventType.ESCALATION_RAISED,
            timestamp=datetime.now(timezone.utc),
            work_item_id=escalation.work_item_id,
            data={
                "escalation_id": escalation.id,
                "reason": escalation.reason.value,
                "rationale": escalation.rationale,
                "message": escalation.render(),
            },
        )
        return await self.send(payload)

    async def notify_escalation_resolved(self, escalation: Escalation) -> bool:
        """Notify n8n that a human answered an escalation."""
        payload = N8nPayload(
            event_type=N8nEventType.ESCALATION_RESOLVED,
            timestamp=datetime.now(timezone.utc),
            work_item_id=escalation.work_item_id,
            data={
                "escalation_id": escalation.id,
                "resolution": escalation.resolution.value if escalation.resolution else None,
                "note": escalation.note,
            },
        )
        return await self.send(payload)

    async def notify_change_merged(self, work_item_id: str, result: MergeResult) -> bool:
        """Notify n8n that a change request was merged."""
        payload = N8nPayload(
            event_type=N8nEventType.CHANGE_MERGED,
            timestamp=datetime.now(timezone.utc),
            work_item_id=work_item_id,
            change_request_id=result.change_request_id,
            data={
                "status": result.status.value,
                "strategy": result.strategy.value,
                "merge_sha": result.merge_sha,
                "branch_deleted": result.branch_deleted,
            },
        )
        return await self.send(payload)

    async def notify_ci_failed(self, work_item_id: str, result: CIResult) -> bool:
        """Notify n8n that CI failed for a change request."""
        payload = N8nPayload(
            event_type=N8nEventType.CI_FAILED,
            timestamp=datetime.now(timezone.utc),
            work_item_id=work_item_id,
            change_request_id=result.change_request_id,
            data={
                "failed_checks": result.failed_checks,
                "summary": result.summary(),
            },
        )
        return await self.send(payload)

    async def notify_unblocked(self, unblocked: list[UnblockedItem]) -> bool:
        """Notify n8n that work items became ready."""
        if not unblocked:
            return True
        payload = N8nPayload(
            event_type=N8nEventType.WORK_ITEMS_UNBLOCKED,
            timestamp=datetime.now(timezone.utc),
            work_item_id=unblocked[0].released_by,
            data={"work_item_ids": [item.work_item_id for item in unblocked]},
        )
        return await self.send(payload)
