"""Nudge persistence collaborators."""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Protocol

from nudgeflow.errors import PersistenceError

from .models import Nudge, NudgeDraft

logger = logging.getLogger(__name__)


class NudgeStore(Protocol):
    async def save(self, draft: NudgeDraft) -> Nudge: ...

    async def list_for_learner(self, learner_id: int) -> list[Nudge]: ...


class InMemoryNudgeStore:
    """
    In-process, list-backed nudge table.

    Ids are assigned sequentially from 1. Rows are append-only: nothing here
    updates or deletes a stored nudge.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._nudges: list[Nudge] = []

    async def save(self, draft: NudgeDraft) -> Nudge:
        with self._lock:
            nudge = Nudge(id=next(self._ids), **draft.model_dump())
            self._nudges.append(nudge)
        return nudge

    async def list_for_learner(self, learner_id: int) -> list[Nudge]:
        """Newest first."""
        with self._lock:
            rows = [n for n in self._nudges if n.learner_id == learner_id]
        return sorted(rows, key=lambda n: (n.created_at, n.id), reverse=True)

    def all(self) -> list[Nudge]:
        with self._lock:
            return list(self._nudges)


async def persist_nudge(store: NudgeStore, draft: NudgeDraft, *, streamed: bool) -> Nudge:
    """
    Write ``draft`` through ``store``.

    Any storage failure is re-raised as ``PersistenceError`` with the original
    exception chained.
    """
    try:
        nudge = await store.save(draft)
    except PersistenceError:
        raise
    except Exception as exc:
        logger.error(
            "Failed to persist nudge for learner %s (source=%s, streamed=%s): %s",
            draft.learner_id,
            draft.source.value,
            streamed,
            exc,
        )
        raise PersistenceError(f"Failed to save nudge: {exc}") from exc

    logger.info(
        "Nudge %s persisted for learner %s (source=%s, status=%s, streamed=%s, chars=%d)",
        nudge.id,
        nudge.learner_id,
        nudge.source.value,
        nudge.status.value,
        streamed,
        len(nudge.text),
    )
    return nudge
