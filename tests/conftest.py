from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator

import pytest

from nudgeflow.generation.breaker import CircuitBreaker
from nudgeflow.learners.models import LearnerSnapshot, RiskLabel
from nudgeflow.nudges.models import Nudge, NudgeDraft


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stands in for ``asyncio.sleep``; records delays and moves the clock."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.delays: list[float] = []
        self._clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._clock is not None:
            self._clock.advance(delay)


class ProviderError(Exception):
    """Mimics an SDK exception that carries an HTTP status."""

    def __init__(self, status_code: int, message: str = "provider error") -> None:
        super().__init__(message)
        self.status_code = status_code


class FakeProviderStream:
    """Async iterator of provider chunks; exceptions in ``items`` are raised in place."""

    def __init__(self, items: list[object]) -> None:
        self._items = list(items)
        self.closed = False
        self.consumed = 0

    def __aiter__(self) -> FakeProviderStream:
        return self

    async def __anext__(self) -> object:
        await asyncio.sleep(0)
        if self.closed or not self._items:
            raise StopAsyncIteration
        item = self._items.pop(0)
        self.consumed += 1
        if isinstance(item, BaseException):
            raise item
        return item

    async def aclose(self) -> None:
        self.closed = True


def completion_response(text: object) -> dict[str, object]:
    return {"choices": [{"message": {"role": "assistant", "content": text}}]}


def stream_chunk(text: object) -> dict[str, object]:
    return {"choices": [{"delta": {"content": text}}]}


class StubGenerationClient:
    """Scripted stand-in for ``GenerationClient`` used by orchestrator tests."""

    def __init__(
        self,
        text: str = "Hi Ana, you're building momentum - try one more lesson today!",
        error: Exception | None = None,
        fragments: list[str] | None = None,
        stream_error: Exception | None = None,
    ) -> None:
        self.text = text
        self.error = error
        self.fragments = fragments if fragments is not None else ["Hi Ana, ", "keep going!"]
        self.stream_error = stream_error
        self.breaker = CircuitBreaker()
        self.prompts: list[str] = []
        self.generate_calls = 0
        self.stream_calls = 0
        self.stream_closed = False
        self.fragments_sent = 0

    async def generate(self, prompt: str) -> str:
        self.generate_calls += 1
        self.prompts.append(prompt)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.text

    async def stream(self, prompt: str) -> AsyncGenerator[str, None]:
        self.stream_calls += 1
        self.prompts.append(prompt)
        try:
            for fragment in self.fragments:
                await asyncio.sleep(0)
                self.fragments_sent += 1
                yield fragment
            if self.stream_error is not None:
                raise self.stream_error
        finally:
            self.stream_closed = True


class FailingStore:
    """A nudge store whose writes always fail."""

    def __init__(self) -> None:
        self.attempts = 0

    async def save(self, draft: NudgeDraft) -> Nudge:
        self.attempts += 1
        raise RuntimeError("connection to database refused")

    async def list_for_learner(self, learner_id: int) -> list[Nudge]:
        return []


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ana() -> LearnerSnapshot:
    return LearnerSnapshot(
        id=7,
        name="Ana Lee",
        completion_pct=40,
        quiz_avg=70,
        missed_sessions=1,
        risk_label=RiskLabel.medium,
    )


@pytest.fixture
def ben() -> LearnerSnapshot:
    return LearnerSnapshot(
        id=8,
        name="Ben Okafor",
        completion_pct=82,
        quiz_avg=91,
        missed_sessions=0,
        risk_label=RiskLabel.low,
    )
