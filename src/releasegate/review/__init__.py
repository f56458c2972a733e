"""Review reconciliation for ReleaseGate.

This module turns a self-review and an independent review into a single
decision, and tracks timing and finding metrics across review cycles.
"""

from __future__ import annotations

from releasegate.review.decision import (
    Decision,
    DecisionResult,
    ReviewDecisionEngine,
    SeverityLattice,
)
from releasegate.review.metrics import MetricsRecord, MetricsTracker, ReviewPhase
from releasegate.review.models import (
    FindingSeverity,
    QualityAnalysis,
    ReviewFinding,
    ReviewReport,
    ReviewSource,
    ReviewVerdict,
    SecurityReview,
    TestValidation,
    Vulnerability,
    VulnerabilitySeverity,
    parse_review_report,
)

__all__ = [
    "Decision",
    "DecisionResult",
    "FindingSeverity",
    "MetricsRecord",
    "MetricsTracker",
    "QualityAnalysis",
    "ReviewDecisionEngine",
    "ReviewFinding",
    "ReviewPhase",
    "ReviewReport",
    "ReviewSource",
    "ReviewVerdict",
    "SecurityReview",
    "SeverityLattice",
    "TestValidation",
    "Vulnerability",
    "VulnerabilitySeverity",
    "parse_review_report",
]
