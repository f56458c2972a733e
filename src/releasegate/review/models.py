"""Review report models consumed by the decision engine.

A review cycle produces two reports for one work item: a self-review from
the agent that wrote the change and an independent review from a separate
reviewer. Both share the same shape. Score ranges are enforced at
construction, so a ReviewReport instance is always well-formed; raw payloads
from review producers go through parse_review_report, which turns pydantic
validation failures into a fatal ReviewValidationError.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from releasegate.errors import ReviewValidationError

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ReviewSource(str, Enum):
    """Which reviewer produced a report.

    Values:
        SELF: Review by the agent that authored the change.
        INDEPENDENT: Review by a separate reviewer.
    """

    SELF = "self"
    INDEPENDENT = "independent"


class ReviewVerdict(str, Enum):
    """A reviewer's own recommendation.

    Values:
        APPROVE: Reviewer recommends releasing the change.
        FAIL: Reviewer found problems that block release.
        UNCERTAIN: Reviewer could not reach a confident verdict.
    """

    APPROVE = "approve"
    FAIL = "fail"
    UNCERTAIN = "uncertain"


class VulnerabilitySeverity(str, Enum):
    """Severity of a security vulnerability.

    Levels:
        CRITICAL: Exploitable flaw requiring immediate human attention.
        HIGH: Serious flaw requiring human attention.
        MEDIUM: Flaw that should be fixed.
        LOW: Hardening opportunity.
    """

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class FindingSeverity(str, Enum):
    """Severity bucket for general review findings.

    Levels:
        CRITICAL: Must be fixed before proceeding.
        HIGH: Should be fixed soon.
        MEDIUM: Should be addressed in a future task.
        LOW: Minor improvement opportunity.
        INFO: Informational note, no action required.
    """

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


# ---------------------------------------------------------------------------
# Report sections
# ---------------------------------------------------------------------------


class Vulnerability(BaseModel):
    """A single security vulnerability reported by a reviewer.

    Attributes:
        type: Vulnerability class (e.g. "sql-injection")
        severity: Vulnerability severity
        location: File and line reference
        description: What is wrong
        remediation: How to fix it
    """

    model_config = ConfigDict(frozen=True)

    type: str = ""
    severity: VulnerabilitySeverity
    location: str = ""
    description: str = ""
    remediation: str = ""


class SecurityReview(BaseModel):
    """Security section of a review report.

    Attributes:
        passed: Whether the reviewer considers the change secure
        vulnerabilities: Vulnerabilities found
        score: Security score (0-100)
    """

    model_config = ConfigDict(frozen=True)

    passed: bool
    vulnerabilities: list[Vulnerability] = Field(default_factory=list)
    score: float = Field(ge=0.0, le=100.0)

    def blocking_vulnerabilities(self) -> list[Vulnerability]:
        """Return vulnerabilities severe enough to require a human."""
        return [
            v
            for v in self.vulnerabilities
            if v.severity in (VulnerabilitySeverity.CRITICAL, VulnerabilitySeverity.HIGH)
        ]


class QualityAnalysis(BaseModel):
    """Code quality section of a review report.

    Attributes:
        score: Overall quality score (0-100)
        maintainability_index: Maintainability index (0-100)
        duplication_percentage: Duplicated code share (0-100)
        complexity_score: Cyclomatic complexity estimate
        code_smells: Code smells found
    """

    model_config = ConfigDict(frozen=True)

    score: float = Field(ge=0.0, le=100.0)
    maintainability_index: float = Field(ge=0.0, le=100.0)
    duplication_percentage: float = Field(ge=0.0, le=100.0)
    complexity_score: float = Field(default=0.0, ge=0.0)
    code_smells: list[str] = Field(default_factory=list)


class TestValidation(BaseModel):
    """Test coverage section of a review report.

    Attributes:
        coverage_adequate: Whether coverage meets the reviewer's bar
        score: Test quality score (0-100)
        missing_tests: Behaviours the reviewer found untested
    """

    __test__ = False  # not a pytest test class

    model_config = ConfigDict(frozen=True)

    coverage_adequate: bool
    score: float = Field(ge=0.0, le=100.0)
    missing_tests: list[str] = Field(default_factory=list)


class ReviewFinding(BaseModel):
    """A general review finding used for metrics bucketing."""

    model_config = ConfigDict(frozen=True)

    severity: FindingSeverity
    message: str = ""


class ReviewReport(BaseModel):
    """One reviewer's complete report for a review cycle.

    Attributes:
        source: Which reviewer produced the report
        confidence: Reviewer confidence (0-1)
        critical_issues: Issues the reviewer considers blocking
        security_review: Security section
        quality_analysis: Code quality section
        test_validation: Test coverage section
        decision: Reviewer's own verdict
        findings: All findings, for metrics
        recommendations: Free-form suggestions
    """

    model_config = ConfigDict(frozen=True)

    source: ReviewSource
    confidence: float = Field(ge=0.0, le=1.0)
    critical_issues: list[str] = Field(default_factory=list)
    security_review: SecurityReview
    quality_analysis: QualityAnalysis
    test_validation: TestValidation
    decision: ReviewVerdict
    findings: list[ReviewFinding] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


def parse_review_report(payload: dict[str, Any], source: ReviewSource) -> ReviewReport:
    """Validate a raw review payload into a ReviewReport.

    Args:
        payload: Report data as produced by a review producer.
        source: Which reviewer produced it. Overrides any source in payload.

    Returns:
        A validated, immutable ReviewReport.

    Raises:
        ReviewValidationError: If any field is missing or out of range.
    """
    try:
        return ReviewReport.model_validate({**payload, "source": source})
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise ReviewValidationError(source.value, problems) from e
