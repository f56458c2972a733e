"""Bounded retry with exponential backoff for external calls.

Every call to the version-control host goes through a RetryPolicy. Each
attempt runs under an explicit asyncio timeout. Errors are classified into
transient (retried after a backoff delay) and permanent (propagated on first
occurrence). When every attempt fails transiently, RetryExhaustedError
carries the last transient error as the terminal failure.

Key Components:
- BackoffConfig / ExponentialBackoff: delay calculation with optional jitter
- classify_error: maps httpx and builtin exceptions onto the error taxonomy
- error_for_response: maps an HTTP error response onto the error taxonomy
- RetryPolicy / with_retry: the retry loop itself
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import TypeVar

import httpx
import structlog
from pydantic import BaseModel, Field

from releasegate.errors import (
    ExternalServiceError,
    PermanentExternalError,
    PermanentFailureKind,
    RetryExhaustedError,
    TransientExternalError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_CALL_TIMEOUT_SECONDS = 30.0

_TRANSIENT_STATUS_CODES = {408, 425, 429}


class BackoffConfig(BaseModel):
    """Exponential backoff configuration.

    Attributes:
        initial_delay_seconds: Delay before the first retry
        max_delay_seconds: Maximum backoff delay
        multiplier: Backoff multiplier per attempt
        jitter: Add random jitter to delays
    """

    initial_delay_seconds: float = Field(default=1.0, ge=0.0, le=60.0)
    max_delay_seconds: float = Field(default=60.0, ge=0.0, le=600.0)
    multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    jitter: bool = Field(default=True)


class ExponentialBackoff:
    """Exponential backoff with jitter.

    Args:
        config: Backoff configuration
    """

    def __init__(self, config: BackoffConfig) -> None:
        self._config = config

    def next_delay(self, attempt: int) -> float:
        """Calculate the delay before retrying after a failed attempt.

        Formula: min(initial_delay * multiplier^attempt, max_delay)
        With jitter: delay * (0.5 + random() * 0.5)

        Args:
            attempt: Failed attempt number (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = self._config.initial_delay_seconds * (self._config.multiplier**attempt)
        delay = min(delay, self._config.max_delay_seconds)

        if self._config.jitter:
            delay *= 0.5 + random.random() * 0.5

        return delay


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given as seconds or an HTTP-date.

    Args:
        value: Raw header value.

    Returns:
        Seconds to wait, or None when absent or unparseable.
    """
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_date = parsedate_to_datetime(value)
    except (ValueError, TypeError):
        logger.warning("failed_to_parse_retry_after", value=value)
        return None
    return max(0.0, (retry_date - datetime.now(timezone.utc)).total_seconds())


def error_for_status(
    status_code: int,
    message: str,
    operation: str | None = None,
    retry_after: float | None = None,
) -> ExternalServiceError:
    """Map an HTTP error status onto a transient or permanent error.

    Args:
        status_code: HTTP status code of the failed response.
        message: Human-readable failure message.
        operation: Name of the operation that failed.
        retry_after: Server-provided wait hint in seconds.

    Returns:
        TransientExternalError or PermanentExternalError.
    """
    if status_code in _TRANSIENT_STATUS_CODES or status_code >= 500:
        return TransientExternalError(
            message, operation=operation, status_code=status_code, retry_after=retry_after
        )
    # GitHub signals secondary rate limits with 403 plus Retry-After
    if status_code == 403 and retry_after is not None:
        return TransientExternalError(
            message, operation=operation, status_code=status_code, retry_after=retry_after
        )

    if status_code in (401, 403):
        kind = PermanentFailureKind.PERMISSION_DENIED
    elif status_code == 404:
        kind = PermanentFailureKind.NOT_FOUND
    elif status_code in (405, 409):
        kind = PermanentFailureKind.MERGE_CONFLICT
    else:
        kind = PermanentFailureKind.INVALID_REQUEST
    return PermanentExternalError(
        message, kind=kind, operation=operation, status_code=status_code
    )


def error_for_response(response: httpx.Response, operation: str) -> ExternalServiceError:
    """Build the classified error for a non-success HTTP response.

    Args:
        response: The failed response.
        operation: Name of the operation that failed.

    Returns:
        TransientExternalError or PermanentExternalError.
    """
    detail = ""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        detail = str(body["message"])
    else:
        detail = response.text[:200]

    retry_after = parse_retry_after(response.headers.get("retry-after"))
    if retry_after is None and response.headers.get("x-ratelimit-remaining") == "0":
        reset = response.headers.get("x-ratelimit-reset")
        if reset and reset.isdigit():
            retry_after = max(0.0, int(reset) - datetime.now(timezone.utc).timestamp())

    message = f"{operation} failed with HTTP {response.status_code}"
    if detail:
        message += f": {detail}"
    return error_for_status(response.status_code, message, operation, retry_after)


def classify_error(error: Exception, operation: str | None = None) -> Exception:
    """Map an exception onto the transient/permanent taxonomy.

    Already-classified errors are returned unchanged. Network failures and
    timeouts become TransientExternalError. HTTP status errors are classified
    by status code. Anything else is returned unchanged and is never retried.

    Args:
        error: Exception raised by an external call.
        operation: Name of the operation, for error messages.

    Returns:
        The classified exception.
    """
    if isinstance(error, ExternalServiceError):
        return error
    if isinstance(error, httpx.HTTPStatusError):
        return error_for_response(error.response, operation or "request")
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return TransientExternalError(
            f"{operation or 'request'} failed: {type(error).__name__}: {error}",
            operation=operation,
        )
    if isinstance(error, (TimeoutError, ConnectionError)):
        return TransientExternalError(
            f"{operation or 'request'} failed: {type(error).__name__}: {error}",
            operation=operation,
        )
    return error


class RetryPolicy:
    """Runs an async operation with bounded retries and exponential backoff.

    Args:
        max_attempts: Total attempts, including the first (default 3, i.e. 2 retries).
        backoff: Backoff configuration.
        call_timeout: Timeout in seconds applied to each attempt.
        sleep: Awaitable sleep function; injectable for tests.
        logger: Optional structlog logger; defaults to the module logger.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff: BackoffConfig | None = None,
        call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        if call_timeout <= 0:
            raise ValueError(f"call_timeout must be positive, got {call_timeout}")
        self.max_attempts = max_attempts
        self.call_timeout = call_timeout
        self._backoff = ExponentialBackoff(backoff or BackoffConfig())
        self._sleep = sleep
        self._logger = (logger or structlog.get_logger(__name__)).bind(component="RetryPolicy")

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "operation",
    ) -> T:
        """Run operation until it succeeds, fails permanently, or attempts run out.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt.
            description: Operation name used in logs and error messages.

        Returns:
            The operation's result.

        Raises:
            PermanentExternalError: On the first permanent failure.
            RetryExhaustedError: When every attempt failed transiently.
            Exception: Unclassified errors propagate unchanged on first occurrence.
        """
        last_error: TransientExternalError | None = None

        for attempt in range(self.max_attempts):
            try:
                return await asyncio.wait_for(operation(), timeout=self.call_timeout)
            except asyncio.TimeoutError:
                error: Exception = TransientExternalError(
                    f"{description} timed out after {self.call_timeout:g}s",
                    operation=description,
                )
            except Exception as e:
                error = classify_error(e, description)
                if not isinstance(error, TransientExternalError):
                    self._logger.warning(
                        "retry_permanent_failure",
                        operation=description,
                        attempt=attempt + 1,
                        error=str(error),
                        error_type=type(error).__name__,
                    )
                    if error is e:
                        raise
                    raise error from e

            last_error = error
            remaining = self.max_attempts - attempt - 1
            if remaining == 0:
                break

            delay = self._backoff.next_delay(attempt)
            if error.retry_after is not None:
                delay = max(delay, error.retry_after)

            self._logger.warning(
                "retry_transient_failure",
                operation=description,
                attempt=attempt + 1,
                max_attempts=self.max_attempts,
                delay_seconds=round(delay, 3),
                error=str(error),
            )
            await self._sleep(delay)

        assert last_error is not None
        self._logger.error(
            "retry_exhausted",
            operation=description,
            attempts=self.max_attempts,
            error=str(last_error),
        )
        raise RetryExhaustedError(description, self.max_attempts, last_error) from last_error


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    backoff: BackoffConfig | None = None,
    call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS,
    description: str = "operation",
) -> T:
    """Run operation under a one-off RetryPolicy.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt.
        max_attempts: Total attempts, including the first.
        backoff: Backoff configuration.
        call_timeout: Timeout in seconds applied to each attempt.
        description: Operation name used in logs and error messages.

    Returns:
        The operation's result.
    """
    policy = RetryPolicy(max_attempts=max_attempts, backoff=backoff, call_timeout=call_timeout)
    return await policy.run(operation, description=description)
