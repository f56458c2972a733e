"""Post-review release pipeline: CI wait, merge, and dependency triggering."""

from __future__ import annotations

from releasegate.orchestrator.auto_merger import AutoMerger, MergeResult, MergeStatus
from releasegate.orchestrator.ci_monitor import (
    CheckConclusion,
    CheckRun,
    CheckStatus,
    CIMonitor,
    CIOutcome,
    CIResult,
    CIStatusSnapshot,
)
from releasegate.orchestrator.dependency_trigger import (
    DependencyGraph,
    DependencyTrigger,
    InMemoryStatusStore,
    UnblockedItem,
    WorkItemStatus,
)
from releasegate.orchestrator.escalation import (
    Escalation,
    EscalationQueue,
    EscalationReason,
    EscalationResolution,
    EscalationStatus,
)
from releasegate.orchestrator.pipeline import (
    PipelineOrchestrator,
    PipelineResult,
    PipelineStage,
    PipelineStatus,
)
from releasegate.orchestrator.retry import BackoffConfig, RetryPolicy, classify_error, with_retry
from releasegate.orchestrator.state_machine import (
    ChangeRequest,
    ChangeRequestSpec,
    ChangeRequestState,
    ChangeRequestStateMachine,
    InvalidTransitionError,
)

__all__ = [
    "AutoMerger",
    "BackoffConfig",
    "ChangeRequest",
    "ChangeRequestSpec",
    "ChangeRequestState",
    "ChangeRequestStateMachine",
    "CheckConclusion",
    "CheckRun",
    "CheckStatus",
    "CIMonitor",
    "CIOutcome",
    "CIResult",
    "CIStatusSnapshot",
    "DependencyGraph",
    "DependencyTrigger",
    "Escalation",
    "EscalationQueue",
    "EscalationReason",
    "EscalationResolution",
    "EscalationStatus",
    "InMemoryStatusStore",
    "InvalidTransitionError",
    "MergeResult",
    "MergeStatus",
    "PipelineOrchestrator",
    "PipelineResult",
    "PipelineStage",
    "PipelineStatus",
    "RetryPolicy",
    "UnblockedItem",
    "WorkItemStatus",
    "classify_error",
    "with_retry",
]
