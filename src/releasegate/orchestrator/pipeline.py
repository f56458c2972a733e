"""Per work item review-to-release pipeline.

PipelineOrchestrator sequences one work item through:

    decision -> (change request -> CI wait -> merge -> dependency trigger)
             | return for fixes
             | escalate (suspend until a human resolves the escalation)

Stages of one work item run strictly in order. Pipelines of different work
items may run concurrently; the orchestrator lock only guards the run
registry and is never held across a call to an external collaborator.
Every terminal or suspended outcome carries human-readable rationale.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, Field

from releasegate.config import CITimeoutPolicy
from releasegate.errors import (
    PermanentExternalError,
    PipelineStateError,
    RetryExhaustedError,
)
from releasegate.logging import bind_work_item_context
from releasegate.orchestrator.auto_merger import AutoMerger, MergeResult
from releasegate.orchestrator.ci_monitor import CIMonitor, CIOutcome, CIResult
from releasegate.orchestrator.dependency_trigger import DependencyTrigger, UnblockedItem
from releasegate.orchestrator.escalation import (
    EscalationReason,
    EscalationResolution,
    EscalationStatus,
)
from releasegate.orchestrator.retry import RetryPolicy
from releasegate.orchestrator.state_machine import (
    ChangeRequest,
    ChangeRequestSpec,
    ChangeRequestState,
    ChangeRequestStateMachine,
)
from releasegate.review.decision import Decision, DecisionResult, ReviewDecisionEngine
from releasegate.review.metrics import (
    DEFAULT_BOTTLENECK_SECONDS,
    MetricsRecord,
    MetricsTracker,
    ReviewPhase,
)
from releasegate.review.models import ReviewReport

if TYPE_CHECKING:
    from releasegate.integrations.n8n import N8nClient
    from releasegate.protocols import EscalationChannel, VersionControlHost


class PipelineStatus(str, Enum):
    """Status of a work item's pipeline run.

    Values:
        RUNNING: Stages are executing.
        RELEASED: Merged and dependents triggered.
        RETURNED_FOR_FIXES: Sent back to the fix loop.
        ESCALATED: Suspended until a human resolves the escalation.
        REJECTED: A human rejected the work item.
        CANCELLED: The run task was cancelled, or its escalation was withdrawn.
        FAILED: A fatal error ended the run.
    """

    RUNNING = "running"
    RELEASED = "released"
    RETURNED_FOR_FIXES = "returned_for_fixes"
    ESCALATED = "escalated"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PipelineStage(str, Enum):
    """Stage a pipeline run is in (or was suspended at)."""

    DECISION = "decision"
    CHANGE_REQUEST = "change_request"
    CI_WAIT = "ci_wait"
    MERGE = "merge"
    DEPENDENCY_TRIGGER = "dependency_trigger"
    COMPLETE = "complete"


class PipelineResult(BaseModel):
    """Outcome of one pipeline run for a work item.

    Attributes:
        work_item_id: Work item processed
        status: Run status
        stage: Last stage reached
        iteration_count: Review cycle number for this work item
        decision: Review decision for this cycle
        change_request: Change request, once opened
        ci_result: CI watch result, once CI was watched
        merge_result: Merge result, once a merge was attempted
        unblocked: Dependents unblocked by the release
        escalation_id: Pending escalation while suspended
        rationale: Human-readable explanation of the outcome
        metrics: Timing and finding metrics
    """

    work_item_id: str
    status: PipelineStatus = PipelineStatus.RUNNING
    stage: PipelineStage = PipelineStage.DECISION
    iteration_count: int = 1
    decision: DecisionResult | None = None
    change_request: ChangeRequest | None = None
    ci_result: CIResult | None = None
    merge_result: MergeResult | None = None
    unblocked: list[UnblockedItem] = Field(default_factory=list)
    escalation_id: str | None = None
    rationale: list[str] = Field(default_factory=list)
    metrics: MetricsRecord | None = None

    def render(self) -> str:
        """Render the outcome as human-readable text."""
        lines = [
            f"Work item {self.work_item_id}: {self.status.value} "
            f"(stage {self.stage.value}, iteration {self.iteration_count})"
        ]
        lines.extend(f"  - {line}" for line in self.rationale)
        return "\n".join(lines)


@dataclass
class _Run:
    spec: ChangeRequestSpec
    self_report: ReviewReport
    independent_report: ReviewReport
    result: PipelineResult
    tracker: MetricsTracker
    log: structlog.stdlib.BoundLogger
    suspended_stage: PipelineStage | None = None


class PipelineOrchestrator:
    """Drives work items from review decision to release.

    Args:
        host: Version-control host.
        decision_engine: Review decision engine.
        ci_monitor: CI monitor.
        auto_merger: Auto merger.
        dependency_trigger: Dependency trigger.
        escalations: Human-in-the-loop channel.
        retry_policy: Retry policy for opening change requests.
        timeout_policy: What to do when CI times out.
        auto_merge: Merge once CI passes; when False the run suspends for a
            manual merge approval.
        notifier: Optional n8n client for merge and CI notifications.
        bottleneck_seconds: Bottleneck threshold for metrics trackers.
        logger: Optional structlog logger; defaults to the module logger.
    """

    def __init__(
        self,
        host: VersionControlHost,
        decision_engine: ReviewDecisionEngine,
        ci_monitor: CIMonitor,
        auto_merger: AutoMerger,
        dependency_trigger: DependencyTrigger,
        escalations: EscalationChannel,
        retry_policy: RetryPolicy | None = None,
        timeout_policy: CITimeoutPolicy = CITimeoutPolicy.ESCALATE,
        auto_merge: bool = True,
        notifier: N8nClient | None = None,
        bottleneck_seconds: float = DEFAULT_BOTTLENECK_SECONDS,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._host = host
        self._engine = decision_engine
        self._ci = ci_monitor
        self._merger = auto_merger
        self._trigger = dependency_trigger
        self._escalations = escalations
        self._retry = retry_policy or RetryPolicy()
        self.timeout_policy = timeout_policy
        self.auto_merge = auto_merge
        self._notifier = notifier
        self.bottleneck_seconds = bottleneck_seconds
        self._transitions = ChangeRequestStateMachine(logger=logger)
        self._runs: dict[str, _Run] = {}
        self._trackers: dict[str, MetricsTracker] = {}
        self._escalated: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._logger = (logger or structlog.get_logger(__name__)).bind(
            component="PipelineOrchestrator"
        )

    # ----- public API -----

    def get_run(self, work_item_id: str) -> PipelineResult | None:
        """Latest result for a work item, or None if it never ran."""
        run = self._runs.get(work_item_id)
        return run.result.model_copy(deep=True) if run else None

    def metrics_for(self, work_item_id: str) -> MetricsTracker:
        """Metrics tracker for a work item, created on first use.

        Review producers use it to time the self-review and independent
        review phases before handing their reports to run().
        """
        tracker = self._trackers.get(work_item_id)
        if tracker is None:
            tracker = MetricsTracker(work_item_id, bottleneck_seconds=self.bottleneck_seconds)
            self._trackers[work_item_id] = tracker
        return tracker

    async def run(
        self,
        spec: ChangeRequestSpec,
        self_report: ReviewReport,
        independent_report: ReviewReport,
    ) -> PipelineResult:
        """Run one review cycle for a work item.

        Args:
            spec: Change request to open if the change is approved.
            self_report: Validated self-review report.
            independent_report: Validated independent review report.

        Returns:
            PipelineResult with status released, returned_for_fixes, or escalated.

        Raises:
            PipelineStateError: If the work item is running, suspended, or finished.
        """
        work_item_id = spec.work_item_id
        async with self._lock:
            previous = self._runs.get(work_item_id)
            if previous is not None and self._escalation_withdrawn(previous):
                self._escalated.pop(previous.result.escalation_id or "", None)
                previous.result.status = PipelineStatus.CANCELLED
            if previous is not None and previous.result.status not in (
                PipelineStatus.RETURNED_FOR_FIXES,
                PipelineStatus.CANCELLED,
                PipelineStatus.FAILED,
            ):
                raise PipelineStateError(
                    f"Work item {work_item_id} cannot start a new review cycle while "
                    f"{previous.result.status.value}"
                )
            tracker = self.metrics_for(work_item_id)
            if previous is not None and previous.result.status is PipelineStatus.RETURNED_FOR_FIXES:
                tracker.increment_iteration()

            run = _Run(
                spec=spec,
                self_report=self_report,
                independent_report=independent_report,
                result=PipelineResult(
                    work_item_id=work_item_id, iteration_count=tracker.iteration_count
                ),
                tracker=tracker,
                log=self._logger.bind(work_item_id=work_item_id),
            )
            self._runs[work_item_id] = run

        bind_work_item_context(work_item_id)
        run.log.info("pipeline_started", iteration=tracker.iteration_count)
        return await self._guard(run, self._decide(run))

    async def resume(
        self,
        escalation_id: str,
        resolution: EscalationResolution,
        note: str | None = None,
    ) -> PipelineResult:
        """Resume a suspended work item after a human answered its escalation.

        approve continues from the stage that escalated, retry returns the
        work item for fixes, and reject ends it.

        Args:
            escalation_id: The escalation being answered.
            resolution: The human's answer.
            note: Optional note recorded with the answer.

        Returns:
            PipelineResult after resuming.

        Raises:
            PipelineStateError: If no work item is suspended on this escalation.
        """
        async with self._lock:
            run = self._suspended_on(escalation_id)
            del self._escalated[escalation_id]
            run.result.status = PipelineStatus.RUNNING
            run.result.escalation_id = None

        try:
            await self._escalations.resolve(escalation_id, resolution, note)
        except Exception:
            async with self._lock:
                run.result.status = PipelineStatus.ESCALATED
                run.result.escalation_id = escalation_id
                self._escalated[escalation_id] = run.result.work_item_id
            raise
        bind_work_item_context(run.result.work_item_id)
        run.log.info(
            "pipeline_resumed",
            escalation_id=escalation_id,
            resolution=resolution.value,
            stage=(run.suspended_stage or run.result.stage).value,
        )

        suffix = f": {note}" if note else ""
        if resolution is EscalationResolution.RETRY:
            return self._finish(
                run,
                PipelineStatus.RETURNED_FOR_FIXES,
                [f"Human reviewer requested fixes{suffix}"],
            )
        if resolution is EscalationResolution.REJECT:
            return self._finish(
                run, PipelineStatus.REJECTED, [f"Human reviewer rejected the change{suffix}"]
            )

        stage = run.suspended_stage or PipelineStage.DECISION
        run.suspended_stage = None
        if stage in (PipelineStage.DECISION, PipelineStage.CHANGE_REQUEST):
            return await self._guard(run, self._open_change_request(run))
        if stage is PipelineStage.CI_WAIT:
            return await self._guard(run, self._watch_ci(run))
        if stage is PipelineStage.MERGE:
            return await self._guard(run, self._merge(run))
        raise PipelineStateError(f"Cannot resume work item from stage {stage.value}")

    async def cancel(self, escalation_id: str, note: str | None = None) -> PipelineResult:
        """Withdraw a suspended work item's escalation and cancel its run.

        The work item may then start a new review cycle with run().

        Raises:
            PipelineStateError: If no work item is suspended on this escalation.
        """
        async with self._lock:
            run = self._suspended_on(escalation_id)
            del self._escalated[escalation_id]

        try:
            await self._escalations.cancel(escalation_id)
        except Exception:
            async with self._lock:
                self._escalated[escalation_id] = run.result.work_item_id
            raise
        run.suspended_stage = None
        run.result.escalation_id = None
        suffix = f": {note}" if note else ""
        return self._finish(
            run, PipelineStatus.CANCELLED, [f"Escalation {escalation_id} was cancelled{suffix}"]
        )

    # ----- stages -----

    async def _decide(self, run: _Run) -> PipelineResult:
        run.result.stage = PipelineStage.DECISION
        run.tracker.start(ReviewPhase.DECISION)
        decision = self._engine.decide(run.self_report, run.independent_report)
        run.tracker.end(ReviewPhase.DECISION)
        run.result.decision = decision

        explanation = list(decision.rationale) + list(decision.next_steps)
        if decision.decision is Decision.FAIL:
            return self._finish(run, PipelineStatus.RETURNED_FOR_FIXES, explanation)
        if decision.decision is Decision.ESCALATE:
            return await self._escalate(run, EscalationReason.REVIEW_DECISION, explanation)
        return await self._open_change_request(run)

    async def _open_change_request(self, run: _Run) -> PipelineResult:
        run.result.stage = PipelineStage.CHANGE_REQUEST
        try:
            change_request = await self._retry.run(
                lambda: self._host.create_or_get_change_request(run.spec),
                description="create_or_get_change_request",
            )
        except (PermanentExternalError, RetryExhaustedError) as e:
            return await self._escalate(
                run,
                EscalationReason.HOST_FAILURE,
                [f"Could not open a change request for branch {run.spec.source_branch}: {e}"],
            )

        if not change_request.work_item_id:
            change_request.work_item_id = run.spec.work_item_id
        run.result.change_request = change_request
        bind_work_item_context(run.spec.work_item_id, change_request.id)

        if change_request.state is ChangeRequestState.MERGED:
            run.log.info("change_request_already_merged", change_request_id=change_request.id)
            return await self._release(run)
        if change_request.state is ChangeRequestState.CLOSED:
            return await self._escalate(
                run,
                EscalationReason.HOST_FAILURE,
                [f"Change request {change_request.id} is closed and will not be reopened"],
            )

        self._transitions.transition(change_request, ChangeRequestState.CI_PENDING)
        return await self._watch_ci(run)

    async def _watch_ci(self, run: _Run) -> PipelineResult:
        change_request = self._change_request(run)
        run.result.stage = PipelineStage.CI_WAIT

        run.tracker.start(ReviewPhase.CI_WAIT)
        try:
            ci_result = await self._ci.watch(change_request.id)
        except PermanentExternalError as e:
            return await self._escalate(
                run,
                EscalationReason.HOST_FAILURE,
                [f"CI status for change request {change_request.id} is unavailable: {e}"],
            )
        finally:
            run.tracker.end(ReviewPhase.CI_WAIT)
        run.result.ci_result = ci_result

        if ci_result.outcome is CIOutcome.SUCCESS:
            self._transitions.transition(change_request, ChangeRequestState.CI_PASSED)
            if not self.auto_merge:
                run.result.stage = PipelineStage.MERGE
                target = change_request.url or f"change request {change_request.id}"
                return await self._escalate(
                    run,
                    EscalationReason.MANUAL_REVIEW,
                    [
                        ci_result.summary(),
                        f"Automatic merge is disabled; review {target} and approve to merge",
                    ],
                )
            return await self._merge(run)

        if ci_result.outcome is CIOutcome.TIMEOUT:
            if self.timeout_policy is CITimeoutPolicy.ESCALATE:
                return await self._escalate(
                    run,
                    EscalationReason.CI_TIMEOUT,
                    [
                        ci_result.summary(),
                        "CI never finished; approve to keep waiting, retry to return for fixes",
                    ],
                )
            rationale = [ci_result.summary(), "CI timeout is treated as a failure by policy"]
        else:
            rationale = [ci_result.summary(), "Fix the failing checks and request a new review"]
            if self._notifier is not None:
                await self._notifier.notify_ci_failed(run.spec.work_item_id, ci_result)

        self._transitions.transition(change_request, ChangeRequestState.CI_FAILED)
        return self._finish(run, PipelineStatus.RETURNED_FOR_FIXES, rationale)

    async def _merge(self, run: _Run) -> PipelineResult:
        change_request = self._change_request(run)
        run.result.stage = PipelineStage.MERGE

        run.tracker.start(ReviewPhase.MERGE)
        merge_result = await self._merger.merge(change_request)
        run.tracker.end(ReviewPhase.MERGE)
        run.result.merge_result = merge_result

        if not merge_result.success:
            return await self._escalate(
                run,
                EscalationReason.MERGE_FAILURE,
                [merge_result.summary(), "Resolve the problem, then approve to retry the merge"],
            )

        self._transitions.transition(change_request, ChangeRequestState.MERGED)
        if self._notifier is not None:
            await self._notifier.notify_change_merged(run.spec.work_item_id, merge_result)
        return await self._release(run)

    async def _release(self, run: _Run) -> PipelineResult:
        run.result.stage = PipelineStage.DEPENDENCY_TRIGGER
        unblocked = await self._trigger.on_released(run.spec.work_item_id)
        run.result.unblocked = unblocked
        run.result.stage = PipelineStage.COMPLETE

        rationale = []
        if run.result.merge_result is not None:
            rationale.append(run.result.merge_result.summary())
        else:
            rationale.append("Change request was already merged")
        if unblocked:
            rationale.append(
                "Unblocked work items: " + ", ".join(item.work_item_id for item in unblocked)
            )
        else:
            rationale.append("No dependent work items were unblocked")
        return self._finish(run, PipelineStatus.RELEASED, rationale)

    # ----- helpers -----

    async def _guard(self, run: _Run, stages: Awaitable[PipelineResult]) -> PipelineResult:
        """Await the stage chain, recording cancellation and fatal errors on the run."""
        try:
            return await stages
        except asyncio.CancelledError:
            run.result.status = PipelineStatus.CANCELLED
            run.log.warning("pipeline_cancelled", stage=run.result.stage.value)
            raise
        except Exception as e:
            run.result.status = PipelineStatus.FAILED
            run.result.rationale = [f"Fatal error during {run.result.stage.value}: {e}"]
            run.log.error(
                "pipeline_failed",
                stage=run.result.stage.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

    async def _escalate(
        self, run: _Run, reason: EscalationReason, rationale: list[str]
    ) -> PipelineResult:
        escalation = await self._escalations.raise_escalation(
            run.spec.work_item_id, reason, rationale
        )
        async with self._lock:
            self._escalated[escalation.id] = run.spec.work_item_id
        run.suspended_stage = run.result.stage
        run.result.escalation_id = escalation.id
        return self._finish(run, PipelineStatus.ESCALATED, rationale)

    def _finish(
        self, run: _Run, status: PipelineStatus, rationale: list[str]
    ) -> PipelineResult:
        run.result.status = status
        run.result.rationale = rationale
        findings = list(run.self_report.findings) + list(run.independent_report.findings)
        run.result.metrics = run.tracker.get_metrics(findings)
        run.log.info(
            "pipeline_finished",
            status=status.value,
            stage=run.result.stage.value,
            iteration=run.result.iteration_count,
            escalation_id=run.result.escalation_id,
        )
        return run.result.model_copy(deep=True)

    def _suspended_on(self, escalation_id: str) -> _Run:
        work_item_id = self._escalated.get(escalation_id)
        run = self._runs.get(work_item_id) if work_item_id else None
        if (
            run is None
            or run.result.status is not PipelineStatus.ESCALATED
            or run.result.escalation_id != escalation_id
        ):
            raise PipelineStateError(f"No work item is suspended on {escalation_id}")
        return run

    def _escalation_withdrawn(self, run: _Run) -> bool:
        """True if the run is suspended on an escalation that is no longer pending."""
        if run.result.status is not PipelineStatus.ESCALATED or run.result.escalation_id is None:
            return False
        escalation = self._escalations.get(run.result.escalation_id)
        return escalation is None or escalation.status is not EscalationStatus.PENDING

    @staticmethod
    def _change_request(run: _Run) -> ChangeRequest:
        if run.result.change_request is None:
            raise PipelineStateError(
                f"Work item {run.spec.work_item_id} has no change request"
            )
        return run.result.change_request
