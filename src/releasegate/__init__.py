"""ReleaseGate - review-to-release pipeline core.

This package reconciles two independent code-review verdicts into a single
pass/fail/escalate decision and, for approved changes, drives them through
CI validation, automatic merge, branch cleanup, and the cascading unlock of
dependent work items.
"""

__version__ = "0.1.0"
