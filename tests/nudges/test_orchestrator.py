from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest

from conftest import (
    FailingStore,
    FakeClock,
    FakeProviderStream,
    RecordingSleep,
    StubGenerationClient,
    stream_chunk,
)
from nudgeflow.errors import (
    CircuitOpenError,
    CooldownError,
    NonRetryableUpstreamError,
    PersistenceError,
    RetryableUpstreamError,
)
from nudgeflow.fallback.templates import EMERGENCY_TEMPLATE, fallback_nudge
from nudgeflow.generation.breaker import CircuitBreaker
from nudgeflow.generation.client import GenerationClient
from nudgeflow.learners.models import LearnerSnapshot
from nudgeflow.nudges.cooldown import CooldownRegistry
from nudgeflow.nudges.models import (
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    FallbackEvent,
    NudgeSource,
    NudgeStatus,
    NudgeStreamEvent,
    StartEvent,
)
from nudgeflow.nudges.service import NudgeOrchestrator
from nudgeflow.nudges.store import InMemoryNudgeStore

_AI_TEXT = "Hi Ana, you're building momentum - try one more lesson today!"


def _orchestrator(
    client: StubGenerationClient,
    clock: FakeClock,
    store: object | None = None,
    **kwargs: object,
) -> NudgeOrchestrator:
    return NudgeOrchestrator(
        client=client,  # type: ignore[arg-type]
        store=store if store is not None else InMemoryNudgeStore(),  # type: ignore[arg-type]
        cooldowns=CooldownRegistry(cooldown_s=30.0, clock=clock),
        **kwargs,  # type: ignore[arg-type]
    )


async def _drain(events: AsyncGenerator[NudgeStreamEvent, None]) -> list[NudgeStreamEvent]:
    return [event async for event in events]


def test_blocking_ai_success(ana: LearnerSnapshot, clock: FakeClock) -> None:
    store = InMemoryNudgeStore()
    client = StubGenerationClient(text=_AI_TEXT)
    service = _orchestrator(client, clock, store)

    response = asyncio.run(service.generate_nudge(ana))

    assert response.text == _AI_TEXT
    assert response.source == NudgeSource.ai
    assert response.learner_id == 7
    saved = store.all()
    assert len(saved) == 1
    assert saved[0].id == response.nudge_id
    assert saved[0].status == NudgeStatus.sent
    assert "Learner: Ana Lee" in client.prompts[0]


def test_blocking_total_outage_falls_back(ana: LearnerSnapshot, clock: FakeClock) -> None:
    store = InMemoryNudgeStore()
    client = StubGenerationClient(
        error=RetryableUpstreamError("HTTP 503: unavailable", status_code=503)
    )
    service = _orchestrator(client, clock, store)

    response = asyncio.run(service.generate_nudge(ana))

    assert response.source == NudgeSource.template
    assert "Ana" in response.text
    assert "complete one more module today" in response.text
    assert response.text == fallback_nudge(ana)
    assert store.all()[0].status == NudgeStatus.fallback


@pytest.mark.parametrize(
    "error",
    [
        CircuitOpenError(12.0),
        NonRetryableUpstreamError("HTTP 401: bad key", status_code=401),
    ],
)
def test_every_generation_error_becomes_a_template(
    ana: LearnerSnapshot, clock: FakeClock, error: Exception
) -> None:
    service = _orchestrator(StubGenerationClient(error=error), clock)

    response = asyncio.run(service.generate_nudge(ana))

    assert response.source == NudgeSource.template


def test_broken_fallback_uses_emergency_text(ana: LearnerSnapshot, clock: FakeClock) -> None:
    def _broken(learner: LearnerSnapshot, reason: str) -> str:
        raise KeyError("template")

    service = _orchestrator(
        StubGenerationClient(error=RetryableUpstreamError("boom")),
        clock,
        fallback=_broken,
    )

    response = asyncio.run(service.generate_nudge(ana))

    assert response.text == EMERGENCY_TEMPLATE.format(name="Ana")
    assert response.source == NudgeSource.template


def test_blocking_persistence_failure_raises(ana: LearnerSnapshot, clock: FakeClock) -> None:
    store = FailingStore()
    service = _orchestrator(StubGenerationClient(), clock, store)

    with pytest.raises(PersistenceError):
        asyncio.run(service.generate_nudge(ana))

    assert store.attempts == 1
    assert not service.cooldowns.in_flight(ana.id)
    assert service.cooldowns.remaining(ana.id) == 0.0


def test_cooldown_rejects_same_learner_only(
    ana: LearnerSnapshot, ben: LearnerSnapshot, clock: FakeClock
) -> None:
    client = StubGenerationClient()
    service = _orchestrator(client, clock)
    asyncio.run(service.generate_nudge(ana))

    with pytest.raises(CooldownError) as excinfo:
        asyncio.run(service.generate_nudge(ana))
    assert excinfo.value.retry_after_s == pytest.approx(30.0)
    assert client.generate_calls == 1

    asyncio.run(service.generate_nudge(ben))
    assert client.generate_calls == 2

    clock.advance(30.0)
    asyncio.run(service.generate_nudge(ana))
    assert client.generate_calls == 3


def test_concurrent_requests_for_one_learner(ana: LearnerSnapshot, clock: FakeClock) -> None:
    store = InMemoryNudgeStore()
    service = _orchestrator(StubGenerationClient(), clock, store)

    async def _both() -> list[object]:
        return await asyncio.gather(
            service.generate_nudge(ana),
            service.generate_nudge(ana),
            return_exceptions=True,
        )

    results = asyncio.run(_both())

    errors = [r for r in results if isinstance(r, CooldownError)]
    assert len(errors) == 1
    assert errors[0].in_flight
    assert len(store.all()) == 1


def test_stream_success_events(ana: LearnerSnapshot, clock: FakeClock) -> None:
    store = InMemoryNudgeStore()
    client = StubGenerationClient(fragments=["Hi Ana, ", "one more ", "lesson today!"])
    service = _orchestrator(client, clock, store)

    events = asyncio.run(_drain(service.stream_nudge(ana)))

    assert isinstance(events[0], StartEvent)
    assert events[0].learner_id == 7
    chunks = [e for e in events if isinstance(e, ChunkEvent)]
    assert [c.text for c in chunks] == ["Hi Ana, ", "one more ", "lesson today!"]
    assert chunks[-1].accumulated == "Hi Ana, one more lesson today!"
    complete = events[-1]
    assert isinstance(complete, CompleteEvent)
    assert complete.text == "Hi Ana, one more lesson today!"
    assert complete.nudge_id == store.all()[0].id
    assert store.all()[0].source == NudgeSource.ai
    assert service.cooldowns.remaining(ana.id) == pytest.approx(30.0)


def test_stream_failure_emits_error_then_fallback(
    ana: LearnerSnapshot, clock: FakeClock
) -> None:
    store = InMemoryNudgeStore()
    client = StubGenerationClient(
        fragments=["Hi Ana, "],
        stream_error=RetryableUpstreamError("connection reset"),
    )
    service = _orchestrator(client, clock, store)

    events = asyncio.run(_drain(service.stream_nudge(ana)))

    assert [e.type for e in events] == ["start", "chunk", "error", "fallback"]
    error = events[2]
    assert isinstance(error, ErrorEvent)
    assert error.message == "Streaming failed, generating fallback..."
    fallback = events[3]
    assert isinstance(fallback, FallbackEvent)
    assert fallback.text == fallback_nudge(ana)
    assert fallback.source == NudgeSource.template
    assert len(store.all()) == 1
    assert store.all()[0].status == NudgeStatus.fallback


def test_stream_whitespace_only_falls_back(ana: LearnerSnapshot, clock: FakeClock) -> None:
    service = _orchestrator(StubGenerationClient(fragments=["  ", "\n"]), clock)

    events = asyncio.run(_drain(service.stream_nudge(ana)))

    assert [e.type for e in events][-2:] == ["error", "fallback"]


def test_stream_rejected_by_cooldown_before_any_event(
    ana: LearnerSnapshot, clock: FakeClock
) -> None:
    client = StubGenerationClient()
    service = _orchestrator(client, clock)
    asyncio.run(_drain(service.stream_nudge(ana)))

    with pytest.raises(CooldownError):
        asyncio.run(_drain(service.stream_nudge(ana)))

    assert client.stream_calls == 1


def test_cancelled_stream_persists_nothing(ana: LearnerSnapshot, clock: FakeClock) -> None:
    store = InMemoryNudgeStore()
    client = StubGenerationClient(fragments=[f"part{i} " for i in range(10)])
    service = _orchestrator(client, clock, store)

    async def _disconnect_after_first_chunk() -> list[str]:
        events = service.stream_nudge(ana)
        seen = [(await events.__anext__()).type, (await events.__anext__()).type]
        await events.aclose()
        return seen

    seen = asyncio.run(_disconnect_after_first_chunk())

    assert seen == ["start", "chunk"]
    assert client.stream_closed
    assert client.fragments_sent == 1
    assert store.all() == []
    assert not service.cooldowns.in_flight(ana.id)
    assert service.cooldowns.remaining(ana.id) == 0.0


def test_stream_persistence_failure_releases_slot(
    ana: LearnerSnapshot, clock: FakeClock
) -> None:
    service = _orchestrator(StubGenerationClient(), clock, FailingStore())

    with pytest.raises(PersistenceError):
        asyncio.run(_drain(service.stream_nudge(ana)))

    assert not service.cooldowns.in_flight(ana.id)
    assert service.cooldowns.remaining(ana.id) == 0.0


def test_history_lists_newest_first(ana: LearnerSnapshot, clock: FakeClock) -> None:
    service = _orchestrator(StubGenerationClient(), clock)
    asyncio.run(service.generate_nudge(ana))
    clock.advance(31.0)
    asyncio.run(_drain(service.stream_nudge(ana)))

    history = asyncio.run(service.history(ana.id))

    assert [n.id for n in history] == [2, 1]


def test_blank_stream_falls_back_and_trips_breaker(ana: LearnerSnapshot, clock: FakeClock) -> None:
    breaker = CircuitBreaker(clock=clock)
    breaker.record_failure()
    breaker.record_failure()
    client = GenerationClient(breaker=breaker, sleep=RecordingSleep(clock), backoff_jitter_s=0.0)
    store = InMemoryNudgeStore()
    service = NudgeOrchestrator(
        client=client,
        store=store,
        cooldowns=CooldownRegistry(cooldown_s=30.0, clock=clock),
    )
    upstream = FakeProviderStream([stream_chunk("  "), stream_chunk("\n")])

    with patch("nudgeflow.generation.client.acompletion", AsyncMock(return_value=upstream)):
        events = asyncio.run(_drain(service.stream_nudge(ana)))

    assert [e.type for e in events] == ["start", "chunk", "chunk", "error", "fallback"]
    assert store.all()[0].source == NudgeSource.template
    assert breaker.consecutive_failures == 3
    assert service.circuit_state().is_open
