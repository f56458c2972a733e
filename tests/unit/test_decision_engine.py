"""Unit tests for the review decision engine.

Tests cover:
- The four reference scenarios (pass, fail, security escalation, low confidence)
- Rule ordering and the security override
- Monotonicity of the severity lattice
- Determinism and rendering of DecisionResult
"""

from __future__ import annotations

import itertools
from collections.abc import Callable

import pytest

from releasegate.review.decision import (
    NEXT_STEPS,
    Decision,
    ReviewDecisionEngine,
    SeverityLattice,
)
from releasegate.review.models import (
    ReviewReport,
    ReviewSource,
    ReviewVerdict,
    Vulnerability,
    VulnerabilitySeverity,
)

ReportFactory = Callable[..., ReviewReport]


@pytest.fixture
def engine() -> ReviewDecisionEngine:
    """Decision engine with the default threshold."""
    return ReviewDecisionEngine()


def _critical_vuln() -> Vulnerability:
    return Vulnerability(
        type="sql-injection",
        severity=VulnerabilitySeverity.CRITICAL,
        location="app/db.py:42",
    )


class TestReferenceScenarios:
    """The canonical decision scenarios."""

    def test_clean_reviews_pass(self, engine: ReviewDecisionEngine, make_report: ReportFactory) -> None:
        """Clean reviews with confidences 0.95/0.92 pass."""
        result = engine.decide(
            make_report(source=ReviewSource.SELF, confidence=0.95),
            make_report(confidence=0.92),
        )

        assert result.decision is Decision.PASS
        assert result.combined_confidence == pytest.approx(0.935)
        assert result.rationale == (
            "Both reviews passed with high confidence",
            "Security score: 92/100",
            "Quality score: 88/100",
            "Test validation score: 90/100",
        )
        assert result.next_steps == NEXT_STEPS[Decision.PASS]
        assert result.security_override is False

    def test_self_critical_issue_fails(self, engine: ReviewDecisionEngine, make_report: ReportFactory) -> None:
        """A self-reported critical issue alone returns the change for fixes."""
        result = engine.decide(
            make_report(source=ReviewSource.SELF, confidence=0.9, critical_issues=["X"]),
            make_report(confidence=0.9),
        )

        assert result.decision is Decision.FAIL
        assert result.rationale == ("1 critical issue(s) identified in self-review",)
        assert result.next_steps == NEXT_STEPS[Decision.FAIL]

    def test_security_overrides_fail(self, engine: ReviewDecisionEngine, make_report: ReportFactory) -> None:
        """A critical vulnerability escalates even when the change already fails."""
        result = engine.decide(
            make_report(source=ReviewSource.SELF, critical_issues=["X"]),
            make_report(security_passed=False, vulnerabilities=[_critical_vuln()]),
        )

        assert result.decision is Decision.ESCALATE
        assert result.security_override is True
        assert result.rationale == (
            "1 critical issue(s) identified in self-review",
            "1 critical/high severity security issue(s) require human review",
        )

    def test_low_confidence_escalates(self, engine: ReviewDecisionEngine, make_report: ReportFactory) -> None:
        """Combined confidence 0.70 under threshold 0.85 escalates."""
        result = engine.decide(
            make_report(source=ReviewSource.SELF, confidence=0.70),
            make_report(confidence=0.70),
        )

        assert result.decision is Decision.ESCALATE
        assert result.security_override is False
        assert result.rationale == ("Combined confidence (0.70) below threshold (0.85)",)
        assert result.next_steps == NEXT_STEPS[Decision.ESCALATE]


class TestRules:
    """Individual rule behaviour and ordering."""

    def test_coverage_gap_fails(self, engine: ReviewDecisionEngine, make_report: ReportFactory) -> None:
        """Inadequate coverage is fixable and fails rather than escalating."""
        result = engine.decide(
            make_report(source=ReviewSource.SELF),
            make_report(coverage_adequate=False),
        )
        assert result.decision is Decision.FAIL
        assert result.rationale == ("Test coverage below threshold",)

    def test_independent_failure_escalates(self, engine: ReviewDecisionEngine, make_report: ReportFactory) -> None:
        """An otherwise unexplained independent failure needs a human."""
        result = engine.decide(
            make_report(source=ReviewSource.SELF),
            make_report(decision=ReviewVerdict.FAIL),
        )
        assert result.decision is Decision.ESCALATE
        assert result.rationale == ("Independent review failed",)

    def test_independent_failure_after_fail_stays_fail(
        self, engine: ReviewDecisionEngine, make_report: ReportFactory
    ) -> None:
        """An explained failure keeps the fail decision but records every factor."""
        result = engine.decide(
            make_report(source=ReviewSource.SELF, confidence=0.5),
            make_report(coverage_adequate=False, decision=ReviewVerdict.FAIL, confidence=0.5),
        )
        assert result.decision is Decision.FAIL
        assert result.rationale == (
            "Test coverage below threshold",
            "Independent review failed",
            "Combined confidence (0.50) below threshold (0.85)",
        )

    def test_medium_vulnerabilities_do_not_escalate(
        self, engine: ReviewDecisionEngine, make_report: ReportFactory
    ) -> None:
        """A failed security review with only medium findings does not force escalation."""
        medium = Vulnerability(type="csrf", severity=VulnerabilitySeverity.MEDIUM)
        result = engine.decide(
            make_report(source=ReviewSource.SELF),
            make_report(security_passed=False, vulnerabilities=[medium]),
        )
        assert result.decision is Decision.PASS
        assert result.security_override is False

    def test_self_report_security_is_ignored(self, engine: ReviewDecisionEngine, make_report: ReportFactory) -> None:
        """Only the independent security review can force escalation."""
        result = engine.decide(
            make_report(
                source=ReviewSource.SELF,
                security_passed=False,
                vulnerabilities=[_critical_vuln()],
            ),
            make_report(),
        )
        assert result.decision is Decision.PASS

    def test_threshold_override(self, engine: ReviewDecisionEngine, make_report: ReportFactory) -> None:
        """A per-call threshold replaces the engine default."""
        self_report = make_report(source=ReviewSource.SELF, confidence=0.8)
        independent = make_report(confidence=0.8)

        assert engine.decide(self_report, independent).decision is Decision.ESCALATE
        assert engine.decide(self_report, independent, threshold=0.75).decision is Decision.PASS

    def test_confidence_equal_to_threshold_passes(self, make_report: ReportFactory) -> None:
        """The threshold is inclusive."""
        engine = ReviewDecisionEngine(threshold=0.5)
        result = engine.decide(
            make_report(source=ReviewSource.SELF, confidence=0.5),
            make_report(confidence=0.5),
        )
        assert result.decision is Decision.PASS

    @pytest.mark.parametrize("threshold", [0.0, -0.1, 1.01])
    def test_invalid_threshold(self, threshold: float) -> None:
        """Thresholds outside (0, 1] are rejected."""
        with pytest.raises(ValueError):
            ReviewDecisionEngine(threshold=threshold)


class TestLatticeProperties:
    """Properties of the severity lattice across many inputs."""

    def _reports(
        self,
        make_report: ReportFactory,
        critical: bool,
        vuln: bool,
        coverage: bool,
        verdict: ReviewVerdict,
        confidence: float,
    ) -> tuple[ReviewReport, ReviewReport]:
        return (
            make_report(
                source=ReviewSource.SELF,
                confidence=confidence,
                critical_issues=["X"] if critical else [],
            ),
            make_report(
                confidence=confidence,
                security_passed=not vuln,
                vulnerabilities=[_critical_vuln()] if vuln else [],
                coverage_adequate=coverage,
                decision=verdict,
            ),
        )

    def test_any_factor_prevents_pass(
        self, engine: ReviewDecisionEngine, make_report: ReportFactory
    ) -> None:
        """Only a cycle with no triggered factor at all can pass."""
        for critical, vuln, coverage, verdict, confidence in itertools.product(
            [False, True],
            [False, True],
            [True, False],
            [ReviewVerdict.APPROVE, ReviewVerdict.FAIL],
            [0.95, 0.6],
        ):
            result = engine.decide(
                *self._reports(make_report, critical, vuln, coverage, verdict, confidence)
            )
            clean = (
                not critical
                and not vuln
                and coverage
                and verdict is ReviewVerdict.APPROVE
                and confidence >= 0.85
            )
            assert (result.decision is Decision.PASS) == clean
            if not clean:
                assert "Both reviews passed with high confidence" not in result.rationale

    def test_fail_is_never_raised_to_escalate_by_soft_factors(
        self, engine: ReviewDecisionEngine, make_report: ReportFactory
    ) -> None:
        """Once failing, an independent failure or low confidence keeps the fail."""
        for verdict, confidence in itertools.product(
            [ReviewVerdict.APPROVE, ReviewVerdict.FAIL], [0.95, 0.3]
        ):
            result = engine.decide(
                *self._reports(make_report, True, False, True, verdict, confidence)
            )
            assert result.decision is Decision.FAIL

    def test_blocking_vulnerability_always_escalates(
        self, engine: ReviewDecisionEngine, make_report: ReportFactory
    ) -> None:
        """Whatever else is true, a blocking vulnerability ends in escalate."""
        for critical, coverage, verdict, confidence in itertools.product(
            [False, True],
            [True, False],
            [ReviewVerdict.APPROVE, ReviewVerdict.FAIL, ReviewVerdict.UNCERTAIN],
            [0.95, 0.3],
        ):
            result = engine.decide(
                *self._reports(make_report, critical, True, coverage, verdict, confidence)
            )
            assert result.decision is Decision.ESCALATE
            assert result.security_override is True

    def test_decide_is_deterministic(self, engine: ReviewDecisionEngine, make_report: ReportFactory) -> None:
        """Identical inputs give identical results."""
        reports = self._reports(make_report, True, False, False, ReviewVerdict.FAIL, 0.7)
        assert engine.decide(*reports) == engine.decide(*reports)

    def test_combined_confidence_is_mean(self, engine: ReviewDecisionEngine, make_report: ReportFactory) -> None:
        """Combined confidence is the arithmetic mean of both reports."""
        result = engine.decide(
            make_report(source=ReviewSource.SELF, confidence=0.2),
            make_report(confidence=1.0),
        )
        assert result.combined_confidence == pytest.approx(0.6)


class TestSeverityLattice:
    """Tests for the SeverityLattice accumulator."""

    def test_raise_to_only_increases(self) -> None:
        """raise_to never lowers the current decision."""
        lattice = SeverityLattice()
        lattice.raise_to(Decision.ESCALATE)
        lattice.raise_to(Decision.FAIL)
        assert lattice.current is Decision.ESCALATE

    def test_only_from_guard(self) -> None:
        """raise_to with only_from is a no-op from any other decision."""
        lattice = SeverityLattice()
        lattice.raise_to(Decision.FAIL)
        lattice.raise_to(Decision.ESCALATE, only_from=Decision.PASS)
        assert lattice.current is Decision.FAIL

    def test_force_escalate_marks_override(self) -> None:
        """force_escalate is recorded on the lattice."""
        lattice = SeverityLattice()
        lattice.force_escalate()
        assert lattice.current is Decision.ESCALATE
        assert lattice.overridden is True


class TestDecisionResult:
    """Tests for DecisionResult."""

    def test_render(self, engine: ReviewDecisionEngine, make_report: ReportFactory) -> None:
        """Rendered text lists the decision, factors, and next steps."""
        result = engine.decide(
            make_report(source=ReviewSource.SELF, confidence=0.7),
            make_report(confidence=0.7),
        )
        text = result.render()

        assert text.startswith("Decision: ESCALATE")
        assert "Combined confidence: 0.70" in text
        assert "  - Combined confidence (0.70) below threshold (0.85)" in text
        assert "  - Await a human response before continuing" in text

    def test_result_is_frozen(self, engine: ReviewDecisionEngine, make_report: ReportFactory) -> None:
        """DecisionResult cannot be modified."""
        result = engine.decide(make_report(source=ReviewSource.SELF), make_report())
        with pytest.raises(Exception):
            result.decision = Decision.FAIL  # type: ignore[misc]
