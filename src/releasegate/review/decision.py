"""Review decision engine.

Combines a self-review and an independent review into a single
pass/fail/escalate decision. Decisions form a severity lattice
(pass < fail < escalate). Rules are evaluated in a fixed order and may only
raise the severity, with one named exception: blocking security findings
force an escalation no matter what came before, because security issues
always need a human even when the change is already failing for fixable
reasons.

The engine is pure: no clock, no I/O, and identical inputs produce an
identical DecisionResult.
"""

from __future__ import annotations

from enum import Enum

import structlog
from pydantic import BaseModel, ConfigDict, Field

from releasegate.review.models import ReviewReport, ReviewVerdict

DEFAULT_CONFIDENCE_THRESHOLD = 0.85


class Decision(str, Enum):
    """Disposition of a review cycle, ordered by severity.

    Values:
        PASS: Proceed to release.
        FAIL: Return the change for fixes.
        ESCALATE: Suspend and wait for a human decision.
    """

    PASS = "pass"
    FAIL = "fail"
    ESCALATE = "escalate"

    @property
    def severity(self) -> int:
        """Position of the decision in the severity lattice."""
        return _SEVERITY[self]


_SEVERITY: dict[Decision, int] = {
    Decision.PASS: 0,
    Decision.FAIL: 1,
    Decision.ESCALATE: 2,
}

NEXT_STEPS: dict[Decision, tuple[str, ...]] = {
    Decision.PASS: (
        "Proceed to release: open the change request and wait for CI",
        "Merge automatically once all checks pass",
    ),
    Decision.FAIL: (
        "Return the change for fixes",
        "Address the listed issues and request a new review cycle",
    ),
    Decision.ESCALATE: (
        "Await a human response before continuing",
        "A reviewer should inspect the flagged factors and approve, retry, or reject",
    ),
}


class DecisionResult(BaseModel):
    """Immutable outcome of one review cycle.

    Attributes:
        decision: Final disposition
        combined_confidence: Mean of both reviewers' confidence (0-1)
        rationale: Every triggered factor, in rule order
        next_steps: Guidance keyed by the final decision
        security_override: True when blocking security findings forced escalation
    """

    model_config = ConfigDict(frozen=True)

    decision: Decision
    combined_confidence: float = Field(ge=0.0, le=1.0)
    rationale: tuple[str, ...] = ()
    next_steps: tuple[str, ...] = ()
    security_override: bool = False

    def render(self) -> str:
        """Render the result as human-readable text."""
        lines = [
            f"Decision: {self.decision.value.upper()}",
            f"Combined confidence: {self.combined_confidence:.2f}",
            "",
            "Factors:",
        ]
        lines.extend(f"  - {factor}" for factor in self.rationale)
        lines.append("")
        lines.append("Next steps:")
        lines.extend(f"  - {step}" for step in self.next_steps)
        return "\n".join(lines)


class SeverityLattice:
    """Accumulates a decision while rules are applied.

    raise_to only ever moves the decision upwards. force_escalate is the
    single non-monotonic entry point and is recorded on the result.
    """

    def __init__(self) -> None:
        self.current = Decision.PASS
        self.factors: list[str] = []
        self.overridden = False

    def record(self, factor: str) -> None:
        """Record a factor without changing the decision."""
        self.factors.append(factor)

    def raise_to(self, target: Decision, *, only_from: Decision | None = None) -> None:
        """Raise the decision to target if that increases severity.

        Args:
            target: Decision to move to.
            only_from: If given, only move when the current decision is this one.
        """
        if only_from is not None and self.current is not only_from:
            return
        if target.severity > self.current.severity:
            self.current = target

    def force_escalate(self) -> None:
        """Set the decision to escalate unconditionally (security override)."""
        self.current = Decision.ESCALATE
        self.overridden = True


class ReviewDecisionEngine:
    """Merges a self-review and an independent review into a decision.

    Args:
        threshold: Default combined-confidence threshold for an automatic pass.
        logger: Optional structlog logger; defaults to the module logger.
    """

    def __init__(
        self,
        threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        if not 0.0 < threshold <= 1.0:
            raise ValueError(f"Confidence threshold must be in (0, 1], got {threshold}")
        self.threshold = threshold
        self._logger = (logger or structlog.get_logger(__name__)).bind(
            component="ReviewDecisionEngine"
        )

    def decide(
        self,
        self_report: ReviewReport,
        independent: ReviewReport,
        threshold: float | None = None,
    ) -> DecisionResult:
        """Decide the disposition of one review cycle.

        Args:
            self_report: The author's self-review.
            independent: The independent review.
            threshold: Override for the confidence threshold.

        Returns:
            The DecisionResult for this cycle.
        """
        threshold = self.threshold if threshold is None else threshold
        lattice = SeverityLattice()

        combined = (self_report.confidence + independent.confidence) / 2

        if self_report.critical_issues:
            lattice.record(
                f"{len(self_report.critical_issues)} critical issue(s) identified in self-review"
            )
            lattice.raise_to(Decision.FAIL)

        security = independent.security_review
        if not security.passed:
            blocking = len(security.blocking_vulnerabilities())
            if blocking > 0:
                lattice.record(
                    f"{blocking} critical/high severity security issue(s) require human review"
                )
                lattice.force_escalate()

        if not independent.test_validation.coverage_adequate:
            lattice.record("Test coverage below threshold")
            lattice.raise_to(Decision.FAIL, only_from=Decision.PASS)

        if independent.decision is ReviewVerdict.FAIL:
            lattice.record("Independent review failed")
            lattice.raise_to(Decision.ESCALATE, only_from=Decision.PASS)

        if combined < threshold:
            lattice.record(
                f"Combined confidence ({combined:.2f}) below threshold ({threshold:.2f})"
            )
            lattice.raise_to(Decision.ESCALATE, only_from=Decision.PASS)

        if lattice.current is Decision.PASS:
            lattice.record("Both reviews passed with high confidence")
            lattice.record(f"Security score: {security.score:g}/100")
            lattice.record(f"Quality score: {independent.quality_analysis.score:g}/100")
            lattice.record(f"Test validation score: {independent.test_validation.score:g}/100")

        result = DecisionResult(
            decision=lattice.current,
            combined_confidence=combined,
            rationale=tuple(lattice.factors),
            next_steps=NEXT_STEPS[lattice.current],
            security_override=lattice.overridden,
        )

        self._logger.info(
            "review_decision_made",
            decision=result.decision.value,
            combined_confidence=round(combined, 4),
            threshold=threshold,
            factor_count=len(result.rationale),
            security_override=result.security_override,
        )
        return result
