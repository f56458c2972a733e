"""Phase timing and finding metrics for one work item's review-to-release run.

The tracker only does timestamp bookkeeping. Phases are started and ended by
whoever performs them (review producers for the two review phases, the
orchestrator for decision, CI wait, and merge). Slow phases are flagged as
bottlenecks and logged; they never fail the pipeline.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from releasegate.review.models import FindingSeverity, ReviewFinding

DEFAULT_BOTTLENECK_SECONDS = 300.0


class ReviewPhase(str, Enum):
    """Timed phases of a review-to-release run.

    Values:
        SELF_REVIEW: Author self-review.
        INDEPENDENT_REVIEW: Independent review.
        DECISION: Decision engine evaluation.
        CI_WAIT: Waiting for CI checks.
        MERGE: Merging and cleanup.
    """

    SELF_REVIEW = "self_review"
    INDEPENDENT_REVIEW = "independent_review"
    DECISION = "decision"
    CI_WAIT = "ci_wait"
    MERGE = "merge"


class PhaseTiming(BaseModel):
    """Start and end of one phase.

    Attributes:
        start: When the phase started
        end: When the phase ended, None while running
    """

    start: datetime
    end: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        """Elapsed seconds, or None if the phase has not ended."""
        if self.end is None:
            return None
        return (self.end - self.start).total_seconds()


class MetricsRecord(BaseModel):
    """Snapshot of a run's metrics.

    Attributes:
        work_item_id: Work item the metrics belong to
        phases: Timing per phase that has been started
        findings_count: Number of findings per severity bucket
        iteration_count: Review cycles so far, starting at 1
        bottlenecks: Phases whose duration exceeded the bottleneck threshold
        total_duration_seconds: Sum of completed phase durations
    """

    work_item_id: str
    phases: dict[ReviewPhase, PhaseTiming] = Field(default_factory=dict)
    findings_count: dict[FindingSeverity, int] = Field(
        default_factory=lambda: {severity: 0 for severity in FindingSeverity}
    )
    iteration_count: int = Field(default=1, ge=1)
    bottlenecks: list[ReviewPhase] = Field(default_factory=list)
    total_duration_seconds: float = 0.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MetricsTracker:
    """Records phase timings, finding counts, and iteration count.

    Args:
        work_item_id: Work item being tracked.
        bottleneck_seconds: Phase duration above which a bottleneck is flagged.
        clock: Returns the current time; injectable for tests.
        logger: Optional structlog logger; defaults to the module logger.
    """

    def __init__(
        self,
        work_item_id: str,
        bottleneck_seconds: float = DEFAULT_BOTTLENECK_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self.work_item_id = work_item_id
        self.bottleneck_seconds = bottleneck_seconds
        self._clock = clock
        self._phases: dict[ReviewPhase, PhaseTiming] = {}
        self._iteration_count = 1
        self._logger = (logger or structlog.get_logger(__name__)).bind(
            component="MetricsTracker", work_item_id=work_item_id
        )

    @property
    def iteration_count(self) -> int:
        return self._iteration_count

    def start(self, phase: ReviewPhase) -> None:
        """Mark the start of a phase, replacing any earlier timing for it."""
        self._phases[phase] = PhaseTiming(start=self._clock())
        self._logger.debug("phase_started", phase=phase.value)

    def end(self, phase: ReviewPhase) -> float:
        """Mark the end of a phase.

        Args:
            phase: Phase to end.

        Returns:
            Phase duration in seconds.

        Raises:
            ValueError: If the phase was never started.
        """
        timing = self._phases.get(phase)
        if timing is None:
            raise ValueError(f"Phase {phase.value} was never started")

        timing.end = self._clock()
        duration = timing.duration_seconds or 0.0
        self._logger.debug("phase_ended", phase=phase.value, duration_seconds=duration)

        if duration > self.bottleneck_seconds:
            self._logger.warning(
                "phase_bottleneck_detected",
                phase=phase.value,
                duration_seconds=duration,
                threshold_seconds=self.bottleneck_seconds,
            )
        return duration

    def increment_iteration(self) -> int:
        """Count one more fix/re-review cycle. Called by the orchestrator only."""
        self._iteration_count += 1
        self._logger.info("review_iteration_incremented", iteration=self._iteration_count)
        return self._iteration_count

    def get_metrics(self, findings: Iterable[ReviewFinding] | None = None) -> MetricsRecord:
        """Build a metrics snapshot.

        Args:
            findings: Findings to bucket by severity, typically from both reports.

        Returns:
            MetricsRecord with timings, counts, and detected bottlenecks.
        """
        counts = {severity: 0 for severity in FindingSeverity}
        for finding in findings or ():
            counts[finding.severity] += 1

        phases = {phase: timing.model_copy() for phase, timing in self._phases.items()}
        bottlenecks: list[ReviewPhase] = []
        total = 0.0
        for phase, timing in phases.items():
            duration = timing.duration_seconds
            if duration is None:
                continue
            total += duration
            if duration > self.bottleneck_seconds:
                bottlenecks.append(phase)

        return MetricsRecord(
            work_item_id=self.work_item_id,
            phases=phases,
            findings_count=counts,
            iteration_count=self._iteration_count,
            bottlenecks=bottlenecks,
            total_duration_seconds=total,
        )
