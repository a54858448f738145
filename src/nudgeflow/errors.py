"""Exception taxonomy for the nudge generation pipeline."""

from __future__ import annotations

from nudgeflow.generation.models import ErrorKind


class NudgeflowError(Exception):
    """Base class for every error raised by this package."""


class GenerationError(NudgeflowError):
    """
    Failure on the AI generation side.

    Never escapes the orchestrator: every subclass is converted into a
    template-sourced nudge.
    """

    kind: ErrorKind = ErrorKind.upstream
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        kind: ErrorKind | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        if kind is not None:
            self.kind = kind

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(message={self.message!r}, "
            f"status_code={self.status_code!r})"
        )


class CircuitOpenError(GenerationError):
    """The breaker is engaged; no network attempt was made."""

    kind = ErrorKind.circuit_open

    def __init__(self, retry_after_s: float) -> None:
        super().__init__(f"Circuit breaker open for another {retry_after_s:.1f}s.")
        self.retry_after_s = retry_after_s


class RetryableUpstreamError(GenerationError):
    """5xx, 429, transport failure or timeout."""

    retryable = True


class NonRetryableUpstreamError(GenerationError):
    """4xx other than 429; retrying cannot help."""

    kind = ErrorKind.rejected


class MalformedResponseError(GenerationError):
    """The provider answered but without a usable generated-text payload."""

    kind = ErrorKind.malformed
    retryable = True


class CooldownError(NudgeflowError):
    """
    A nudge for this learner is in flight or was generated too recently.

    For an in-flight rejection ``retry_after_s`` is the minimum wait: the
    running request still has to finish before its window starts.
    """

    def __init__(self, learner_id: int, retry_after_s: float, *, in_flight: bool = False) -> None:
        if in_flight:
            message = (
                f"A nudge for learner {learner_id} is already being generated; "
                f"retry in at least {retry_after_s:.1f}s."
            )
        else:
            message = (
                f"Learner {learner_id} received a nudge recently; "
                f"retry in {retry_after_s:.1f}s."
            )
        super().__init__(message)
        self.learner_id = learner_id
        self.retry_after_s = retry_after_s
        self.in_flight = in_flight


class PersistenceError(NudgeflowError):
    """Writing the nudge to storage failed. Nothing sensible to fall back to."""


class RateLimitError(NudgeflowError):
    """A client sent more nudge requests than its window allows."""

    def __init__(self, client_key: str, retry_after_s: float, limit: int) -> None:
        super().__init__("Too many requests. Please try again later.")
        self.client_key = client_key
        self.retry_after_s = retry_after_s
        self.limit = limit
