"""Application wiring for ReleaseGate.

ReleaseGate builds every pipeline component from a ReleaseGateConfig and
owns the resources they share (HTTP clients, the database engine). Tests
and embedding services can pass their own host, workspace manager, or
status store to replace the configured ones.

Example usage:
    >>> from releasegate.app import ReleaseGate
    >>> from releasegate.config import load_config
    >>>
    >>> async with ReleaseGate.from_config(load_config()) as gate:
    ...     await gate.dependency_trigger.register("WI-2", prerequisites=["WI-1"])
    ...     result = await gate.orchestrator.run(spec, self_report, independent_report)
"""

from __future__ import annotations

from types import TracebackType

from sqlalchemy.ext.asyncio import AsyncEngine

from releasegate.config import ReleaseGateConfig
from releasegate.database.connection import get_engine, get_session_factory
from releasegate.database.status_store import SqlStatusStore
from releasegate.integrations.github import GitHubHost
from releasegate.integrations.n8n import N8nClient, N8nConfig
from releasegate.logging import get_logger, setup_logging
from releasegate.orchestrator.auto_merger import AutoMerger
from releasegate.orchestrator.ci_monitor import CIMonitor
from releasegate.orchestrator.dependency_trigger import DependencyTrigger, UnblockedItem
from releasegate.orchestrator.escalation import EscalationQueue
from releasegate.orchestrator.pipeline import PipelineOrchestrator
from releasegate.orchestrator.retry import BackoffConfig, RetryPolicy
from releasegate.pipeline.worktree import WorktreeCleaner
from releasegate.protocols import StatusStore, VersionControlHost, WorkspaceManager
from releasegate.review.decision import ReviewDecisionEngine


class ReleaseGate:
    """Shared application context holding the wired pipeline.

    Attributes:
        config: Loaded ReleaseGate configuration
        host: Version-control host
        notifier: n8n client, or None when notifications are disabled
        escalations: Human-in-the-loop escalation queue
        status_store: Work item status store
        dependency_trigger: Dependency trigger
        orchestrator: Pipeline orchestrator
    """

    def __init__(
        self,
        config: ReleaseGateConfig,
        host: VersionControlHost | None = None,
        workspace: WorkspaceManager | None = None,
        status_store: StatusStore | None = None,
    ) -> None:
        self.config = config
        self.logger = get_logger(__name__)
        self._engine: AsyncEngine | None = None

        self.host = host or GitHubHost(config.github)
        self.notifier: N8nClient | None = None
        if config.notifications.enabled and config.notifications.webhook_url:
            self.notifier = N8nClient(N8nConfig.from_settings(config.notifications))

        if status_store is None:
            self._engine = get_engine(config.database)
            status_store = SqlStatusStore(get_session_factory(self._engine))
        self.status_store = status_store

        if workspace is None:
            workspace = WorktreeCleaner(
                config.workspace.repo_path, config.workspace.worktree_base_path
            )

        retry_policy = RetryPolicy(
            max_attempts=config.merge.max_retries + 1,
            backoff=BackoffConfig(
                initial_delay_seconds=config.merge.initial_delay_seconds,
                max_delay_seconds=config.merge.max_delay_seconds,
                jitter=config.merge.jitter,
            ),
            call_timeout=config.merge.request_timeout_seconds,
        )

        self.escalations = EscalationQueue(notifier=self.notifier)
        self.dependency_trigger = DependencyTrigger(self.status_store)
        if self.notifier is not None:
            self.dependency_trigger.add_listener(self._notify_unblocked)

        self.orchestrator = PipelineOrchestrator(
            host=self.host,
            decision_engine=ReviewDecisionEngine(threshold=config.review.confidence_threshold),
            ci_monitor=CIMonitor(
                self.host,
                poll_interval=config.ci.poll_interval_seconds,
                max_duration=config.ci.max_wait_seconds,
                request_timeout=config.ci.request_timeout_seconds,
                max_check_reruns=config.ci.max_check_reruns,
                summary_interval=config.ci.summary_interval_seconds,
            ),
            auto_merger=AutoMerger(
                self.host,
                workspace=workspace,
                retry_policy=retry_policy,
                strategy=config.merge.strategy,
                delete_branch=config.merge.delete_branch,
                mergeable_recheck_seconds=config.merge.mergeable_recheck_seconds,
                request_timeout=config.merge.request_timeout_seconds,
            ),
            dependency_trigger=self.dependency_trigger,
            escalations=self.escalations,
            retry_policy=retry_policy,
            timeout_policy=config.ci.timeout_policy,
            auto_merge=config.merge.auto_merge,
            notifier=self.notifier,
            bottleneck_seconds=config.review.bottleneck_threshold_seconds,
        )

    @classmethod
    def from_config(cls, config: ReleaseGateConfig) -> ReleaseGate:
        """Configure logging and build the application from configuration."""
        setup_logging(config.logging)
        return cls(config)

    async def _notify_unblocked(self, unblocked: list[UnblockedItem]) -> None:
        if self.notifier is not None:
            await self.notifier.notify_unblocked(unblocked)

    async def close(self) -> None:
        """Release HTTP clients and database connections."""
        if isinstance(self.host, GitHubHost):
            await self.host.close()
        if self.notifier is not None:
            await self.notifier.close()
        if self._engine is not None:
            await self._engine.dispose()
        self.logger.info("releasegate_closed")

    async def __aenter__(self) -> ReleaseGate:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
