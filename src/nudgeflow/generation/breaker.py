"""Process-wide circuit breaker guarding the text-generation provider."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from pydantic import BaseModel

from nudgeflow.errors import CircuitOpenError

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_RESET_TIMEOUT_S = 30.0


class CircuitState(BaseModel):
    """Point-in-time copy of the breaker counters."""

    consecutive_failures: int
    open_until: float | None
    is_open: bool


class CircuitBreaker:
    """
    Counts consecutive failed generation calls and short-circuits new calls
    for ``reset_timeout_s`` once ``failure_threshold`` is reached.

    One instance is shared by every request in the process. All mutations
    happen under a lock and never await, so concurrent requests cannot lose
    updates. After the window elapses the next call goes through; if it fails
    the counter is still at or above the threshold and the breaker reopens.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout_s: float = DEFAULT_RESET_TIMEOUT_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.reset_timeout_s = reset_timeout_s
        self._clock = clock
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._open_until: float | None = None

    def is_open(self) -> bool:
        # Unlocked read; may be one call stale.
        open_until = self._open_until
        return open_until is not None and self._clock() < open_until

    def check(self) -> None:
        """Raise ``CircuitOpenError`` when calls are currently short-circuited."""
        open_until = self._open_until
        if open_until is None:
            return
        remaining = open_until - self._clock()
        if remaining > 0:
            raise CircuitOpenError(retry_after_s=remaining)

    def record_success(self) -> None:
        with self._lock:
            was_tripped = self._open_until is not None
            self._consecutive_failures = 0
            self._open_until = None
        if was_tripped:
            logger.info("Circuit breaker reset after successful call")

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            failures = self._consecutive_failures
            opened = failures >= self.failure_threshold
            if opened:
                self._open_until = self._clock() + self.reset_timeout_s
        if opened:
            logger.warning(
                "Circuit breaker opened after %d consecutive failures (%.0fs)",
                failures,
                self.reset_timeout_s,
            )

    def snapshot(self) -> CircuitState:
        with self._lock:
            failures = self._consecutive_failures
            open_until = self._open_until
        return CircuitState(
            consecutive_failures=failures,
            open_until=open_until,
            is_open=open_until is not None and self._clock() < open_until,
        )

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures
