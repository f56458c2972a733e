"""Shared fixtures for unit tests."""

from __future__ import annotations

import pytest

from releasegate.review.models import ReviewReport, ReviewSource
from tests.fakes import ReportFactory, build_report


@pytest.fixture
def make_report() -> ReportFactory:
    """Factory fixture for review reports."""
    return build_report


@pytest.fixture
def self_report() -> ReviewReport:
    """A clean, confident self-review."""
    return build_report(source=ReviewSource.SELF, confidence=0.95)


@pytest.fixture
def independent_report() -> ReviewReport:
    """A clean, confident independent review."""
    return build_report(source=ReviewSource.INDEPENDENT, confidence=0.92)
