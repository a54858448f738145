"""Retry eligibility classifier for provider failures."""

from __future__ import annotations

import asyncio

from litellm.exceptions import APIConnectionError, Timeout as ProviderTimeout

from nudgeflow.errors import (
    GenerationError,
    MalformedResponseError,
    NonRetryableUpstreamError,
    RetryableUpstreamError,
)

from .models import ErrorKind, GenerationFailure

RATE_LIMIT_STATUS = 429


def _status_code(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify_exception(exc: BaseException) -> GenerationError:
    """
    Map a raw exception from the provider call onto the error taxonomy.

    Rules (evaluated in priority order):
    1. Already-classified ``GenerationError``: returned unchanged.
    2. Timeouts (ours or the provider SDK's): retryable, even though the SDK
       reports them as 408.
    3. Connection failures: retryable.
    4. 429: retryable.
    5. Other 4xx: non-retryable.
    6. 5xx, unknown status, anything else: retryable.
    """
    if isinstance(exc, GenerationError):
        return exc

    message = str(exc) or type(exc).__name__
    status = _status_code(exc)

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ProviderTimeout)):
        return RetryableUpstreamError(
            f"Generation attempt timed out: {message}",
            status_code=status,
            kind=ErrorKind.timeout,
        )

    if isinstance(exc, (APIConnectionError, ConnectionError, OSError)):
        return RetryableUpstreamError(
            f"Transport failure: {message}",
            status_code=status,
            kind=ErrorKind.transport,
        )

    if status == RATE_LIMIT_STATUS:
        return RetryableUpstreamError(
            f"HTTP {status}: {message}",
            status_code=status,
            kind=ErrorKind.rate_limited,
        )

    if status is not None and 400 <= status < 500:
        return NonRetryableUpstreamError(f"HTTP {status}: {message}", status_code=status)

    prefix = f"HTTP {status}: " if status is not None else ""
    return RetryableUpstreamError(f"{prefix}{message}", status_code=status)


def error_from_failure(failure: GenerationFailure) -> GenerationError:
    """Turn a tagged parse failure into the matching exception."""
    if failure.error_kind == ErrorKind.malformed:
        return MalformedResponseError(failure.message, status_code=failure.status_code)
    if failure.error_kind == ErrorKind.rejected:
        return NonRetryableUpstreamError(failure.message, status_code=failure.status_code)
    return RetryableUpstreamError(
        failure.message,
        status_code=failure.status_code,
        kind=failure.error_kind,
    )


class RetryDecision:
    """Encapsulates a retry eligibility decision with its reason."""

    def __init__(self, *, should_retry: bool, reason: str) -> None:
        self.should_retry = should_retry
        self.reason = reason

    def __bool__(self) -> bool:
        return self.should_retry

    def __repr__(self) -> str:
        return f"RetryDecision(should_retry={self.should_retry}, reason={self.reason!r})"


def decide_retry(error: GenerationError, attempt: int, max_attempts: int) -> RetryDecision:
    """``attempt`` is zero-based."""
    if not error.retryable:
        return RetryDecision(
            should_retry=False,
            reason=f"Error kind '{error.kind.value}' is non-retryable.",
        )
    if attempt + 1 >= max_attempts:
        return RetryDecision(
            should_retry=False,
            reason=f"Max attempts reached ({max_attempts}).",
        )
    return RetryDecision(
        should_retry=True,
        reason=f"Error kind '{error.kind.value}' is retryable. Scheduling attempt {attempt + 2}.",
    )
