"""Error taxonomy for the review-to-release pipeline.

Errors fall into three families:
- Validation errors: malformed review input, fatal and never retried.
- External service errors: split into transient (retried by RetryPolicy)
  and permanent (surfaced immediately and routed to escalation).
- Pipeline errors: dependency graph and orchestration misuse, fatal to the
  current cycle.

CI wait timeouts are not exceptions; they are a distinct CI outcome so that
"broke" and "never finished" stay distinguishable downstream.
"""

from __future__ import annotations

from enum import Enum


class ReleaseGateError(Exception):
    """Base class for all ReleaseGate errors."""


class ReviewValidationError(ReleaseGateError):
    """Raised when a review report fails validation.

    Attributes:
        source: Which report failed (e.g. "self" or "independent").
        problems: Human-readable description of each invalid field.
    """

    def __init__(self, source: str, problems: list[str]):
        self.source = source
        self.problems = problems
        detail = "; ".join(problems) if problems else "unknown problem"
        super().__init__(f"Invalid {source} review report: {detail}")


class PermanentFailureKind(str, Enum):
    """Categories of non-retryable external failures.

    Values:
        MERGE_CONFLICT: The change cannot be merged cleanly.
        PERMISSION_DENIED: Credentials lack the required access.
        CHANGE_CLOSED: The change request was closed without merging.
        NOT_FOUND: The referenced resource does not exist.
        INVALID_REQUEST: The host rejected the request as malformed.
    """

    MERGE_CONFLICT = "merge_conflict"
    PERMISSION_DENIED = "permission_denied"
    CHANGE_CLOSED = "change_closed"
    NOT_FOUND = "not_found"
    INVALID_REQUEST = "invalid_request"


class ExternalServiceError(ReleaseGateError):
    """Base class for failures reported by an external collaborator.

    Attributes:
        operation: Name of the operation that failed.
        status_code: HTTP status code, if the failure came from an HTTP response.
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        status_code: int | None = None,
    ):
        self.operation = operation
        self.status_code = status_code
        super().__init__(message)


class TransientExternalError(ExternalServiceError):
    """A failure that is likely to succeed on retry (rate limit, network blip).

    Attributes:
        retry_after: Seconds the service asked us to wait, if it said so.
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, operation=operation, status_code=status_code)


class PermanentExternalError(ExternalServiceError):
    """A failure that will repeat identically on retry.

    Attributes:
        kind: Category of the permanent failure.
    """

    def __init__(
        self,
        message: str,
        kind: PermanentFailureKind,
        operation: str | None = None,
        status_code: int | None = None,
    ):
        self.kind = kind
        super().__init__(message, operation=operation, status_code=status_code)


class RetryExhaustedError(ReleaseGateError):
    """Raised when every retry attempt failed with a transient error.

    Attributes:
        attempts: Number of attempts made.
        last_error: The transient error from the final attempt.
    """

    def __init__(self, description: str, attempts: int, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{description} failed after {attempts} attempts: {last_error}"
        )


class DependencyError(ReleaseGateError):
    """Raised for invalid dependency graph operations (e.g. unknown work item)."""


class DependencyCycleError(DependencyError):
    """Raised when registering dependencies would create a cycle.

    Attributes:
        cycles: Each detected cycle as an ordered list of work item ids.
    """

    def __init__(self, cycles: list[list[str]]):
        self.cycles = cycles
        rendered = ", ".join(" -> ".join(cycle) for cycle in cycles)
        super().__init__(f"Circular dependencies detected: {rendered}")


class PipelineStateError(ReleaseGateError):
    """Raised when an orchestrator operation does not fit the run's state."""
