"""Per-learner in-flight guard and cooldown window."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from nudgeflow.errors import CooldownError

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_S = 30.0


class CooldownRegistry:
    """
    Admits at most one generation per learner at a time and enforces a
    minimum gap between completed generations for the same learner.

    ``acquire`` checks and claims the slot in one locked step, so two racing
    requests for the same learner cannot both get through. Critical sections
    never await, which keeps a single lock cheap enough for every learner.
    """

    def __init__(
        self,
        cooldown_s: float = DEFAULT_COOLDOWN_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._lock = threading.Lock()
        self._in_flight: set[int] = set()
        self._last_completed: dict[int, float] = {}
        self._last_sweep = clock()

    def acquire(self, learner_id: int) -> None:
        """Claim the learner's slot or raise ``CooldownError``."""
        with self._lock:
            self._sweep_locked()
            if learner_id in self._in_flight:
                error = CooldownError(learner_id, self.cooldown_s, in_flight=True)
            else:
                remaining = self._remaining_locked(learner_id)
                if remaining > 0:
                    error = CooldownError(learner_id, remaining)
                else:
                    self._in_flight.add(learner_id)
                    return

        logger.warning("Rejected nudge request: %s", error)
        raise error

    def complete(self, learner_id: int) -> None:
        """Release the slot and start the cooldown window."""
        with self._lock:
            self._in_flight.discard(learner_id)
            self._last_completed[learner_id] = self._clock()

    def abandon(self, learner_id: int) -> None:
        """Release the slot without starting a cooldown window."""
        with self._lock:
            self._in_flight.discard(learner_id)

    def remaining(self, learner_id: int) -> float:
        with self._lock:
            return self._remaining_locked(learner_id)

    def in_flight(self, learner_id: int) -> bool:
        with self._lock:
            return learner_id in self._in_flight

    def __len__(self) -> int:
        """Learners currently holding state: in flight or inside a window."""
        with self._lock:
            return len(self._in_flight.union(self._last_completed))

    def _remaining_locked(self, learner_id: int) -> float:
        last = self._last_completed.get(learner_id)
        if last is None:
            return 0.0
        remaining = last + self.cooldown_s - self._clock()
        if remaining <= 0:
            del self._last_completed[learner_id]
            return 0.0
        return remaining

    def _sweep_locked(self) -> None:
        # At most one full sweep per cooldown window.
        now = self._clock()
        if now - self._last_sweep < self.cooldown_s:
            return
        expired = [
            learner_id
            for learner_id, last in self._last_completed.items()
            if last + self.cooldown_s <= now
        ]
        for learner_id in expired:
            del self._last_completed[learner_id]
        self._last_sweep = now
        if expired:
            logger.debug("Cooldown sweep removed %d expired learners", len(expired))
