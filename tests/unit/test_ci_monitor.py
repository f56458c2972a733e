"""Unit tests for CI monitoring.

All tests drive the monitor with a fake clock whose sleep advances time,
so no test waits in real time.
"""

from __future__ import annotations

import asyncio

import pytest

from tests.fakes import FakeClock, FakeHost, logged_events, make_snapshot, mock_logger
from releasegate.errors import PermanentExternalError, PermanentFailureKind, TransientExternalError
from releasegate.orchestrator.ci_monitor import CIMonitor, CIOutcome, CIOverall, CIStatusSnapshot


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def _monitor(host: FakeHost, clock: FakeClock, **kwargs: object) -> CIMonitor:
    return CIMonitor(
        host,
        poll_interval=10,
        max_duration=60,
        clock=clock,
        sleep=clock.sleep,
        **kwargs,  # type: ignore[arg-type]
    )


class TestSnapshotOverall:
    """Tests for aggregate CI status."""

    def test_any_failure_is_failure(self) -> None:
        """One failed check fails the snapshot even while others run."""
        assert make_snapshot(lint="success", tests="failure", build="running").overall is CIOverall.FAILURE

    def test_all_done_is_success(self) -> None:
        """All checks done without failure is success; neutral counts as done."""
        assert make_snapshot(lint="success", docs="neutral").overall is CIOverall.SUCCESS

    def test_unfinished_is_pending(self) -> None:
        """Any unfinished check keeps the snapshot pending."""
        assert make_snapshot(lint="success", tests="pending").overall is CIOverall.PENDING

    def test_no_checks_is_pending(self) -> None:
        """An empty check list has not started yet."""
        assert CIStatusSnapshot().overall is CIOverall.PENDING


class TestWatch:
    """Tests for CIMonitor.watch."""

    @pytest.mark.asyncio
    async def test_success_after_pending(self, host: FakeHost, clock: FakeClock) -> None:
        """Polling continues through pending snapshots until success."""
        host.snapshots = [
            make_snapshot(lint="pending", tests="pending"),
            make_snapshot(lint="success", tests="running"),
            make_snapshot(lint="success", tests="success"),
        ]
        result = await _monitor(host, clock).watch("7")

        assert result.outcome is CIOutcome.SUCCESS
        assert result.polls == 3
        assert result.elapsed_seconds == 20
        assert result.passed_checks == ["lint", "tests"]
        assert clock.sleeps == [10, 10]

    @pytest.mark.asyncio
    async def test_failure_is_reported(self, host: FakeHost, clock: FakeClock) -> None:
        """A failed check ends the watch with the failing check names."""
        host.snapshots = [make_snapshot(lint="success", tests="failure")]
        result = await _monitor(host, clock).watch("7")

        assert result.outcome is CIOutcome.FAILURE
        assert result.failed_checks == ["tests"]
        assert "tests" in result.summary()

    @pytest.mark.asyncio
    async def test_timeout_at_deadline(self, host: FakeHost, clock: FakeClock) -> None:
        """A never-resolving status times out at 60s, not earlier and not later."""
        host.snapshots = [make_snapshot(tests="running")]
        result = await _monitor(host, clock).watch("7")

        assert result.outcome is CIOutcome.TIMEOUT
        assert result.elapsed_seconds == 60
        assert clock.now == 60
        assert result.polls == 7
        assert result.pending_checks == ["tests"]

    @pytest.mark.asyncio
    async def test_last_sleep_clamped_to_deadline(self, host: FakeHost, clock: FakeClock) -> None:
        """The final sleep is shortened so the deadline is not overshot."""
        host.snapshots = [make_snapshot(tests="running")]
        monitor = CIMonitor(host, poll_interval=25, max_duration=60, clock=clock, sleep=clock.sleep)
        result = await monitor.watch("7")

        assert result.outcome is CIOutcome.TIMEOUT
        assert clock.sleeps == [25, 25, 10]
        assert result.elapsed_seconds == 60

    @pytest.mark.asyncio
    async def test_empty_checks_time_out(self, host: FakeHost, clock: FakeClock) -> None:
        """A change request with no checks at all is treated as pending."""
        result = await _monitor(host, clock).watch("7")
        assert result.outcome is CIOutcome.TIMEOUT

    @pytest.mark.asyncio
    async def test_per_call_overrides(self, host: FakeHost, clock: FakeClock) -> None:
        """poll_interval and max_duration can be overridden per watch."""
        host.snapshots = [make_snapshot(tests="running")]
        result = await _monitor(host, clock).watch("7", poll_interval=5, max_duration=15)

        assert result.outcome is CIOutcome.TIMEOUT
        assert result.elapsed_seconds == 15
        assert clock.sleeps == [5, 5, 5]

    @pytest.mark.asyncio
    async def test_invalid_durations(self, host: FakeHost, clock: FakeClock) -> None:
        """Non-positive intervals are rejected."""
        with pytest.raises(ValueError):
            await _monitor(host, clock).watch("7", poll_interval=0)

    @pytest.mark.asyncio
    async def test_transient_fetch_error_keeps_polling(self, host: FakeHost, clock: FakeClock) -> None:
        """A transient fetch failure is logged and the next poll proceeds."""
        logger = mock_logger()
        host.snapshots = [
            TransientExternalError("502 from host", status_code=502),
            make_snapshot(tests="success"),
        ]
        result = await _monitor(host, clock, logger=logger).watch("7")

        assert result.outcome is CIOutcome.SUCCESS
        assert result.polls == 2
        assert "ci_status_fetch_failed" in logged_events(logger, "warning")

    @pytest.mark.asyncio
    async def test_permanent_fetch_error_propagates(self, host: FakeHost, clock: FakeClock) -> None:
        """A permanent fetch failure ends the watch with the error."""
        host.snapshots = [
            PermanentExternalError("gone", kind=PermanentFailureKind.NOT_FOUND, status_code=404)
        ]
        with pytest.raises(PermanentExternalError):
            await _monitor(host, clock).watch("7")

    @pytest.mark.asyncio
    async def test_progress_summary_logged(self, host: FakeHost, clock: FakeClock) -> None:
        """A progress line is logged every summary interval."""
        logger = mock_logger()
        host.snapshots = [make_snapshot(tests="running")]
        monitor = _monitor(host, clock, logger=logger, summary_interval=20)
        await monitor.watch("7")

        assert logged_events(logger, "info").count("ci_watch_progress") == 2


class TestReruns:
    """Tests for re-running failed checks."""

    @pytest.mark.asyncio
    async def test_rerun_then_success(self, host: FakeHost, clock: FakeClock) -> None:
        """Failed checks are re-requested once and a later pass succeeds."""
        host.snapshots = [
            make_snapshot(lint="success", tests="failure"),
            make_snapshot(lint="success", tests="running"),
            make_snapshot(lint="success", tests="success"),
        ]
        result = await _monitor(host, clock, max_check_reruns=1).watch("7")

        assert result.outcome is CIOutcome.SUCCESS
        assert result.reruns == 1
        assert host.reruns == ["2"]

    @pytest.mark.asyncio
    async def test_rerun_budget_exhausted(self, host: FakeHost, clock: FakeClock) -> None:
        """Once the re-run budget is spent a failure is final."""
        host.snapshots = [make_snapshot(tests="failure")]
        result = await _monitor(host, clock, max_check_reruns=1).watch("7")

        assert result.outcome is CIOutcome.FAILURE
        assert result.reruns == 1
        assert host.reruns == ["1"]

    @pytest.mark.asyncio
    async def test_no_reruns_by_default(self, host: FakeHost, clock: FakeClock) -> None:
        """With the default budget failures are reported immediately."""
        host.snapshots = [make_snapshot(tests="failure")]
        result = await _monitor(host, clock).watch("7")

        assert result.outcome is CIOutcome.FAILURE
        assert host.reruns == []


class TestCancellation:
    """Tests for cancelling a watch."""

    @pytest.mark.asyncio
    async def test_cancel_stops_polling(self, host: FakeHost) -> None:
        """Cancelling the awaiting task stops the watch without leaking it."""
        logger = mock_logger()
        host.snapshots = [make_snapshot(tests="running")]
        monitor = CIMonitor(host, poll_interval=0.01, max_duration=60, logger=logger)

        task = asyncio.create_task(monitor.watch("7"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        polls = host.fetch_calls
        await asyncio.sleep(0.05)
        assert host.fetch_calls == polls
        assert "ci_watch_cancelled" in logged_events(logger, "info")
