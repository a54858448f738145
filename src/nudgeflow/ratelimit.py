"""Per-client fixed-window request limiter for the nudge endpoint."""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections.abc import Callable

from pydantic import BaseModel

from nudgeflow.errors import RateLimitError

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 5
DEFAULT_WINDOW_S = 60.0
DEFAULT_CLEANUP_INTERVAL_S = 300.0


class RateLimitWindow(BaseModel):
    count: int
    reset_at: float


class RateLimitStatus(BaseModel):
    """Counters after an admitted request, for response headers."""

    limit: int
    remaining: int
    reset_in_s: float


def client_key(
    *,
    admin_api_key: str | None = None,
    client_host: str | None = None,
    forwarded_for: str | None = None,
    real_ip: str | None = None,
) -> str:
    """
    Identify the caller: an admin API key wins, otherwise the first known
    address. Keys are hashed so raw secrets never sit in memory or logs.
    """
    if admin_api_key:
        digest = hashlib.sha256(admin_api_key.encode("utf-8")).hexdigest()[:16]
        return f"api-key:{digest}"

    forwarded = (forwarded_for or "").split(",")[0].strip()
    address = client_host or forwarded or (real_ip or "").strip() or "unknown"
    return f"ip:{address}"


class RateLimiter:
    """
    Allows ``max_requests`` per ``window_s`` for each client key.

    A window opens on the first request from a key and resets once it
    expires. Expired windows are swept at most every ``cleanup_interval_s``.
    ``max_requests=0`` disables limiting.
    """

    def __init__(
        self,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_s: float = DEFAULT_WINDOW_S,
        cleanup_interval_s: float = DEFAULT_CLEANUP_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 0:
            raise ValueError("max_requests must not be negative")
        self.max_requests = max_requests
        self.window_s = window_s
        self.cleanup_interval_s = cleanup_interval_s
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, RateLimitWindow] = {}
        self._last_cleanup = clock()

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    def hit(self, key: str) -> RateLimitStatus:
        """Count one request for ``key`` or raise ``RateLimitError``."""
        if not self.enabled:
            return RateLimitStatus(limit=0, remaining=0, reset_in_s=0.0)

        with self._lock:
            now = self._clock()
            self._sweep_locked(now)

            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                window = RateLimitWindow(count=0, reset_at=now + self.window_s)
                self._windows[key] = window

            if window.count >= self.max_requests:
                error = RateLimitError(key, window.reset_at - now, self.max_requests)
            else:
                window.count += 1
                return RateLimitStatus(
                    limit=self.max_requests,
                    remaining=self.max_requests - window.count,
                    reset_in_s=window.reset_at - now,
                )

        logger.warning(
            "Rate limit exceeded for %s... (limit=%d, retry_after=%.1fs)",
            key[:20],
            self.max_requests,
            error.retry_after_s,
        )
        raise error

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def _sweep_locked(self, now: float) -> None:
        if now - self._last_cleanup < self.cleanup_interval_s:
            return
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]
        self._last_cleanup = now
        if expired:
            logger.debug(
                "Rate limit cleanup removed %d windows (%d left)",
                len(expired),
                len(self._windows),
            )
