"""CI status monitoring for change requests.

CIMonitor polls the version-control host for a change request's check runs
until the aggregate status is terminal or the wait exceeds its deadline:

    {pending, running} -> success | failure
                       -> timeout (deadline exceeded)

Timeout is a terminal outcome of its own, distinct from failure, so that
operators can tell "broke" from "never finished". Waiting between polls uses
asyncio.sleep, so the watch suspends cooperatively and is cancelled by
cancelling the awaiting task; it spawns no background tasks of its own.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, Field

from releasegate.errors import ExternalServiceError, TransientExternalError
from releasegate.orchestrator.retry import classify_error

if TYPE_CHECKING:
    from releasegate.protocols import VersionControlHost

DEFAULT_POLL_INTERVAL_SECONDS = 30.0
DEFAULT_MAX_DURATION_SECONDS = 30 * 60.0
DEFAULT_SUMMARY_INTERVAL_SECONDS = 5 * 60.0


# ---------------------------------------------------------------------------
# Snapshot models
# ---------------------------------------------------------------------------


class CheckStatus(str, Enum):
    """Execution status of a single check run.

    Values:
        PENDING: Queued, not started.
        RUNNING: In progress.
        DONE: Finished with a conclusion.
    """

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"


class CheckConclusion(str, Enum):
    """Conclusion of a finished check run.

    Values:
        SUCCESS: The check passed.
        FAILURE: The check failed (includes timed out and cancelled checks).
        NEUTRAL: The check finished without a verdict (e.g. skipped).
    """

    SUCCESS = "success"
    FAILURE = "failure"
    NEUTRAL = "neutral"


class CIOverall(str, Enum):
    """Aggregate status derived from all check runs."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


class CheckRun(BaseModel):
    """One named CI job for a change request.

    Attributes:
        id: Host identifier of the check run
        name: Check name
        status: Execution status
        conclusion: Conclusion once done
        url: Link to the check details
    """

    id: str
    name: str
    status: CheckStatus
    conclusion: CheckConclusion | None = None
    url: str | None = None

    @property
    def failed(self) -> bool:
        return self.conclusion is CheckConclusion.FAILURE


class CIStatusSnapshot(BaseModel):
    """All check runs of a change request at one point in time."""

    checks: list[CheckRun] = Field(default_factory=list)

    @property
    def overall(self) -> CIOverall:
        """Aggregate status.

        Failure if any check failed; success if there is at least one check
        and all checks are done; pending otherwise.
        """
        if any(check.failed for check in self.checks):
            return CIOverall.FAILURE
        if self.checks and all(check.status is CheckStatus.DONE for check in self.checks):
            return CIOverall.SUCCESS
        return CIOverall.PENDING

    @property
    def failed_checks(self) -> list[str]:
        return [check.name for check in self.checks if check.failed]

    @property
    def passed_checks(self) -> list[str]:
        return [
            check.name
            for check in self.checks
            if check.status is CheckStatus.DONE and not check.failed
        ]

    @property
    def pending_checks(self) -> list[str]:
        return [check.name for check in self.checks if check.status is not CheckStatus.DONE]


class CIOutcome(str, Enum):
    """Terminal outcome of a CI watch.

    Values:
        SUCCESS: Every check passed.
        FAILURE: At least one check failed.
        TIMEOUT: The deadline passed before CI finished.
    """

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class CIResult(BaseModel):
    """Result of watching CI for one change request.

    Attributes:
        change_request_id: Change request watched
        outcome: Terminal outcome
        elapsed_seconds: Time spent watching
        polls: Number of status fetches attempted
        reruns: Number of failed-check re-runs requested
        passed_checks: Checks that finished without failing
        failed_checks: Checks that failed
        pending_checks: Checks still pending or running at the end
    """

    change_request_id: str
    outcome: CIOutcome
    elapsed_seconds: float
    polls: int
    reruns: int = 0
    passed_checks: list[str] = Field(default_factory=list)
    failed_checks: list[str] = Field(default_factory=list)
    pending_checks: list[str] = Field(default_factory=list)

    def summary(self) -> str:
        """Human-readable description of the outcome."""
        minutes = self.elapsed_seconds / 60
        if self.outcome is CIOutcome.SUCCESS:
            return f"CI passed after {minutes:.1f} min ({len(self.passed_checks)} checks)"
        if self.outcome is CIOutcome.FAILURE:
            return (
                f"CI failed after {minutes:.1f} min; failing checks: "
                f"{', '.join(self.failed_checks) or 'unknown'}"
            )
        return (
            f"CI did not finish within {minutes:.1f} min; "
            f"passed: {', '.join(self.passed_checks) or 'none'}; "
            f"still pending: {', '.join(self.pending_checks) or 'none reported'}"
        )


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


class CIMonitor:
    """Polls a change request's CI checks until success, failure, or timeout.

    Args:
        host: Version-control host to poll.
        poll_interval: Default seconds between polls.
        max_duration: Default maximum seconds to wait.
        request_timeout: Timeout for a single status fetch.
        max_check_reruns: Times failed checks are re-requested before reporting failure.
        summary_interval: Seconds between progress summary log lines.
        clock: Monotonic clock in seconds; injectable for tests.
        sleep: Awaitable sleep; injectable for tests.
        logger: Optional structlog logger; defaults to the module logger.
    """

    def __init__(
        self,
        host: VersionControlHost,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_duration: float = DEFAULT_MAX_DURATION_SECONDS,
        request_timeout: float = 30.0,
        max_check_reruns: int = 0,
        summary_interval: float = DEFAULT_SUMMARY_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._host = host
        self.poll_interval = poll_interval
        self.max_duration = max_duration
        self.request_timeout = request_timeout
        self.max_check_reruns = max_check_reruns
        self.summary_interval = summary_interval
        self._clock = clock
        self._sleep = sleep
        self._logger = (logger or structlog.get_logger(__name__)).bind(component="CIMonitor")

    async def watch(
        self,
        change_request_id: str,
        poll_interval: float | None = None,
        max_duration: float | None = None,
    ) -> CIResult:
        """Watch CI for a change request until it reaches a terminal outcome.

        Args:
            change_request_id: Change request to watch.
            poll_interval: Seconds between polls (defaults to the monitor's setting).
            max_duration: Maximum seconds to wait (defaults to the monitor's setting).

        Returns:
            CIResult with outcome success, failure, or timeout.

        Raises:
            PermanentExternalError: If the host permanently rejects a status fetch.
            asyncio.CancelledError: If the awaiting task is cancelled.
        """
        interval = self.poll_interval if poll_interval is None else poll_interval
        deadline = self.max_duration if max_duration is None else max_duration
        if interval <= 0 or deadline <= 0:
            raise ValueError("poll_interval and max_duration must be positive")

        log = self._logger.bind(change_request_id=change_request_id)
        log.info("ci_watch_started", poll_interval=interval, max_duration=deadline)

        start = self._clock()
        last_summary = start
        polls = 0
        reruns = 0
        snapshot = CIStatusSnapshot()

        try:
            while True:
                fetched = await self._fetch(change_request_id, log)
                polls += 1
                elapsed = self._clock() - start

                if fetched is not None:
                    snapshot = fetched
                    overall = snapshot.overall
                    if overall is CIOverall.SUCCESS:
                        log.info("ci_checks_passed", elapsed_seconds=elapsed, polls=polls)
                        return self._result(
                            change_request_id, CIOutcome.SUCCESS, snapshot, elapsed, polls, reruns
                        )
                    if overall is CIOverall.FAILURE:
                        if reruns >= self.max_check_reruns or not await self._rerun_failed(
                            snapshot, log
                        ):
                            log.warning(
                                "ci_checks_failed",
                                failed_checks=snapshot.failed_checks,
                                elapsed_seconds=elapsed,
                                reruns=reruns,
                            )
                            return self._result(
                                change_request_id,
                                CIOutcome.FAILURE,
                                snapshot,
                                elapsed,
                                polls,
                                reruns,
                            )
                        reruns += 1

                if elapsed >= deadline:
                    log.warning(
                        "ci_watch_timeout",
                        elapsed_seconds=elapsed,
                        max_duration=deadline,
                        passed_checks=snapshot.passed_checks,
                        pending_checks=snapshot.pending_checks,
                    )
                    return self._result(
                        change_request_id, CIOutcome.TIMEOUT, snapshot, elapsed, polls, reruns
                    )

                now = self._clock()
                if now - last_summary >= self.summary_interval:
                    last_summary = now
                    log.info(
                        "ci_watch_progress",
                        elapsed_seconds=elapsed,
                        polls=polls,
                        total_checks=len(snapshot.checks),
                        passed=len(snapshot.passed_checks),
                        pending=len(snapshot.pending_checks),
                    )

                await self._sleep(min(interval, deadline - elapsed))
        except asyncio.CancelledError:
            log.info("ci_watch_cancelled", polls=polls)
            raise

    async def _fetch(
        self, change_request_id: str, log: structlog.stdlib.BoundLogger
    ) -> CIStatusSnapshot | None:
        """Fetch one snapshot; return None after a transient failure."""
        try:
            return await asyncio.wait_for(
                self._host.fetch_ci_status(change_request_id),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError:
            log.warning("ci_status_fetch_timeout", timeout_seconds=self.request_timeout)
            return None
        except Exception as e:
            error = classify_error(e, "fetch_ci_status")
            if isinstance(error, TransientExternalError):
                log.warning("ci_status_fetch_failed", error=str(error))
                return None
            if error is e:
                raise
            raise error from e

    async def _rerun_failed(
        self, snapshot: CIStatusSnapshot, log: structlog.stdlib.BoundLogger
    ) -> bool:
        """Ask the host to re-run failed checks. Returns False if that is not possible."""
        failed = [check for check in snapshot.checks if check.failed]
        try:
            for check in failed:
                await asyncio.wait_for(
                    self._host.rerun_check(check.id), timeout=self.request_timeout
                )
        except (asyncio.TimeoutError, ExternalServiceError) as e:
            log.warning("ci_check_rerun_failed", error=str(e) or type(e).__name__)
            return False

        log.info("ci_checks_rerun_requested", checks=[check.name for check in failed])
        return True

    @staticmethod
    def _result(
        change_request_id: str,
        outcome: CIOutcome,
        snapshot: CIStatusSnapshot,
        elapsed: float,
        polls: int,
        reruns: int,
    ) -> CIResult:
        return CIResult(
            change_request_id=change_request_id,
            outcome=outcome,
            elapsed_seconds=elapsed,
            polls=polls,
            reruns=reruns,
            passed_checks=snapshot.passed_checks,
            failed_checks=snapshot.failed_checks,
            pending_checks=snapshot.pending_checks,
        )
