"""Unit tests for the escalation queue."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from releasegate.errors import PipelineStateError
from releasegate.orchestrator.escalation import (
    Escalation,
    EscalationQueue,
    EscalationReason,
    EscalationResolution,
    EscalationStatus,
)
from tests.fakes import logged_events, mock_logger


@pytest.fixture
def logger() -> MagicMock:
    return mock_logger()


@pytest.fixture
def queue(logger: MagicMock) -> EscalationQueue:
    return EscalationQueue(logger=logger)


@pytest.fixture
def notifier() -> MagicMock:
    client = MagicMock()
    client.notify_escalation_raised = AsyncMock(return_value=True)
    client.notify_escalation_resolved = AsyncMock(return_value=True)
    return client


class TestEscalation:
    def test_id_prefix(self):
        escalation = Escalation(work_item_id="WI-1", reason=EscalationReason.CI_TIMEOUT)
        assert escalation.id.startswith("esc-")
        assert escalation.status is EscalationStatus.PENDING
        assert escalation.resolution is None

    def test_render(self):
        escalation = Escalation(
            work_item_id="WI-7",
            reason=EscalationReason.REVIEW_DECISION,
            rationale=["Combined confidence 0.80 below threshold 0.85", "Security score: 92/100"],
        )

        assert escalation.render() == (
            "Work item WI-7 needs a decision (review_decision)\n"
            "  - Combined confidence 0.80 below threshold 0.85\n"
            "  - Security score: 92/100"
        )


class TestRaise:
    @pytest.mark.asyncio
    async def test_raise_records_pending(self, queue: EscalationQueue, logger: MagicMock):
        escalation = await queue.raise_escalation(
            "WI-1", EscalationReason.CI_TIMEOUT, ("CI did not finish",)
        )

        assert queue.get(escalation.id) is escalation
        assert escalation.rationale == ["CI did not finish"]
        assert queue.pending() == [escalation]
        assert logged_events(logger, "warning") == ["escalation_raised"]

    @pytest.mark.asyncio
    async def test_raise_notifies(self, notifier: MagicMock):
        queue = EscalationQueue(notifier=notifier, logger=mock_logger())

        escalation = await queue.raise_escalation(
            "WI-1", EscalationReason.MERGE_FAILURE, ["merge conflict"]
        )

        notifier.notify_escalation_raised.assert_awaited_once_with(escalation)

    @pytest.mark.asyncio
    async def test_pending_filters_and_orders(self, queue: EscalationQueue):
        first = await queue.raise_escalation("WI-1", EscalationReason.CI_TIMEOUT, [])
        second = await queue.raise_escalation("WI-2", EscalationReason.MANUAL_REVIEW, [])
        third = await queue.raise_escalation("WI-1", EscalationReason.HOST_FAILURE, [])
        first.created_at = third.created_at + timedelta(seconds=1)

        assert queue.pending() == [second, third, first]
        assert queue.pending("WI-1") == [third, first]
        assert queue.pending("WI-9") == []


class TestResolve:
    @pytest.mark.asyncio
    async def test_resolve(self, queue: EscalationQueue, logger: MagicMock):
        escalation = await queue.raise_escalation("WI-1", EscalationReason.CI_TIMEOUT, [])

        resolved = await queue.resolve(escalation.id, EscalationResolution.APPROVE, note="ok")

        assert resolved.status is EscalationStatus.RESOLVED
        assert resolved.resolution is EscalationResolution.APPROVE
        assert resolved.note == "ok"
        assert resolved.resolved_at is not None
        assert queue.pending() == []
        assert "escalation_resolved" in logged_events(logger, "info")

    @pytest.mark.asyncio
    async def test_resolve_notifies(self, notifier: MagicMock):
        queue = EscalationQueue(notifier=notifier, logger=mock_logger())
        escalation = await queue.raise_escalation("WI-1", EscalationReason.CI_TIMEOUT, [])

        await queue.resolve(escalation.id, EscalationResolution.REJECT)

        notifier.notify_escalation_resolved.assert_awaited_once_with(escalation)

    @pytest.mark.asyncio
    async def test_resolve_unknown(self, queue: EscalationQueue):
        with pytest.raises(KeyError):
            await queue.resolve("esc-missing", EscalationResolution.APPROVE)

    @pytest.mark.asyncio
    async def test_resolve_twice(self, queue: EscalationQueue):
        escalation = await queue.raise_escalation("WI-1", EscalationReason.CI_TIMEOUT, [])
        await queue.resolve(escalation.id, EscalationResolution.RETRY)

        with pytest.raises(PipelineStateError, match="already resolved"):
            await queue.resolve(escalation.id, EscalationResolution.APPROVE)

        assert escalation.resolution is EscalationResolution.RETRY


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel(self, queue: EscalationQueue):
        escalation = await queue.raise_escalation("WI-1", EscalationReason.CI_TIMEOUT, [])

        cancelled = await queue.cancel(escalation.id)

        assert cancelled.status is EscalationStatus.CANCELLED
        assert cancelled.resolution is None
        assert queue.pending() == []

    @pytest.mark.asyncio
    async def test_resolve_after_cancel(self, queue: EscalationQueue):
        escalation = await queue.raise_escalation("WI-1", EscalationReason.CI_TIMEOUT, [])
        await queue.cancel(escalation.id)

        with pytest.raises(PipelineStateError, match="already cancelled"):
            await queue.resolve(escalation.id, EscalationResolution.APPROVE)

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, queue: EscalationQueue):
        with pytest.raises(KeyError):
            await queue.cancel("esc-missing")


class TestMetrics:
    def test_empty(self, queue: EscalationQueue):
        metrics = queue.get_metrics()

        assert metrics.total == 0
        assert metrics.by_reason == {}
        assert metrics.average_resolution_seconds is None

    @pytest.mark.asyncio
    async def test_counts(self, queue: EscalationQueue):
        a = await queue.raise_escalation("WI-1", EscalationReason.CI_TIMEOUT, [])
        b = await queue.raise_escalation("WI-2", EscalationReason.CI_TIMEOUT, [])
        await queue.raise_escalation("WI-3", EscalationReason.REVIEW_DECISION, [])
        await queue.resolve(a.id, EscalationResolution.APPROVE)
        a.resolved_at = a.created_at + timedelta(seconds=30)
        await queue.cancel(b.id)

        metrics = queue.get_metrics()

        assert metrics.total == 3
        assert metrics.pending == 1
        assert metrics.resolved == 1
        assert metrics.cancelled == 1
        assert metrics.by_reason == {
            EscalationReason.CI_TIMEOUT: 2,
            EscalationReason.REVIEW_DECISION: 1,
        }
        assert metrics.average_resolution_seconds == pytest.approx(30.0)
