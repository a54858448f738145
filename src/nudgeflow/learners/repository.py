"""Learner lookup collaborator used by the HTTP layer."""

from __future__ import annotations

import threading
from typing import Protocol

from .models import LearnerSnapshot


class LearnerRepository(Protocol):
    def get(self, learner_id: int) -> LearnerSnapshot | None: ...

    def upsert(self, learner: LearnerSnapshot) -> None: ...


class InMemoryLearnerRepository:
    """
    Process-local learner directory.

    Deployments backed by a hosted database swap this for a repository that
    reads the learners table; the pipeline only needs ``get``.
    """

    def __init__(self, learners: list[LearnerSnapshot] | None = None) -> None:
        self._lock = threading.Lock()
        self._learners: dict[int, LearnerSnapshot] = {}
        for learner in learners or []:
            self._learners[learner.id] = learner

    def get(self, learner_id: int) -> LearnerSnapshot | None:
        with self._lock:
            return self._learners.get(learner_id)

    def upsert(self, learner: LearnerSnapshot) -> None:
        with self._lock:
            self._learners[learner.id] = learner

    def __len__(self) -> int:
        with self._lock:
            return len(self._learners)
