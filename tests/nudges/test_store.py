"""Tests for nudge persistence."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FailingStore
from nudgeflow.errors import PersistenceError
from nudgeflow.nudges.models import NudgeDraft, NudgeSource, NudgeStatus
from nudgeflow.nudges.store import InMemoryNudgeStore, persist_nudge


def _draft(learner_id: int = 7, text: str = "Hi Ana, one lesson today!") -> NudgeDraft:
    return NudgeDraft(
        learner_id=learner_id,
        text=text,
        source=NudgeSource.ai,
        status=NudgeStatus.sent,
    )


def test_save_assigns_sequential_ids() -> None:
    store = InMemoryNudgeStore()

    async def _run() -> list[int]:
        first = await store.save(_draft())
        second = await store.save(_draft(learner_id=8))
        return [first.id, second.id]

    assert asyncio.run(_run()) == [1, 2]
    assert len(store.all()) == 2


def test_saved_nudge_copies_draft_fields() -> None:
    store = InMemoryNudgeStore()

    nudge = asyncio.run(store.save(_draft()))

    assert nudge.learner_id == 7
    assert nudge.text == "Hi Ana, one lesson today!"
    assert nudge.source == NudgeSource.ai
    assert nudge.status == NudgeStatus.sent
    assert nudge.created_at.tzinfo is not None


def test_list_for_learner_is_newest_first() -> None:
    store = InMemoryNudgeStore()

    async def _run() -> list[int]:
        await store.save(_draft(text="first nudge for Ana"))
        await store.save(_draft(learner_id=9, text="someone else entirely"))
        await store.save(_draft(text="second nudge for Ana"))
        return [n.id for n in await store.list_for_learner(7)]

    assert asyncio.run(_run()) == [3, 1]


def test_persist_nudge_wraps_storage_failures() -> None:
    store = FailingStore()

    with pytest.raises(PersistenceError) as excinfo:
        asyncio.run(persist_nudge(store, _draft(), streamed=False))

    assert "connection to database refused" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert store.attempts == 1


def test_all_returns_a_snapshot() -> None:
    store = InMemoryNudgeStore()
    asyncio.run(store.save(_draft()))

    rows = store.all()
    rows.clear()

    assert len(store.all()) == 1
