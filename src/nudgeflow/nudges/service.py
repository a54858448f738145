"""NudgeOrchestrator - AI-first nudge generation with guaranteed fallback."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable

from nudgeflow.errors import GenerationError, MalformedResponseError
from nudgeflow.fallback.templates import emergency_nudge, fallback_nudge
from nudgeflow.generation.breaker import CircuitState
from nudgeflow.generation.client import GenerationClient
from nudgeflow.generation.prompts import build_nudge_prompt
from nudgeflow.learners.models import LearnerSnapshot

from .cooldown import CooldownRegistry
from .models import (
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    FallbackEvent,
    Nudge,
    NudgeDraft,
    NudgeResponse,
    NudgeSource,
    NudgeStatus,
    NudgeStreamEvent,
    StartEvent,
)
from .store import NudgeStore, persist_nudge

logger = logging.getLogger(__name__)

FallbackFn = Callable[[LearnerSnapshot, str], str]


class NudgeOrchestrator:
    """
    Produces exactly one persisted nudge per accepted request.

    Both entry points:
    - Reject the request with ``CooldownError`` if the learner already has a
      generation in flight or finished one within the cooldown window.
    - Try the AI path first and convert every ``GenerationError`` into a
      template nudge.
    - Persist the result; a storage failure surfaces as ``PersistenceError``
      and is the only way a request fails after admission.

    A request that is cancelled or fails to persist releases the learner's
    slot without starting the cooldown window.
    """

    def __init__(
        self,
        client: GenerationClient,
        store: NudgeStore,
        cooldowns: CooldownRegistry | None = None,
        fallback: FallbackFn = fallback_nudge,
    ) -> None:
        self._client = client
        self._store = store
        self._cooldowns = cooldowns if cooldowns is not None else CooldownRegistry()
        self._fallback = fallback

    @property
    def cooldowns(self) -> CooldownRegistry:
        return self._cooldowns

    def circuit_state(self) -> CircuitState:
        return self._client.breaker.snapshot()

    async def generate_nudge(self, learner: LearnerSnapshot) -> NudgeResponse:
        """Blocking path: generate, persist and return one nudge."""
        self._cooldowns.acquire(learner.id)
        completed = False
        try:
            logger.info("Generating nudge for learner %s (streaming=False)", learner.id)
            prompt = build_nudge_prompt(learner)
            try:
                text = await self._client.generate(prompt)
            except GenerationError as err:
                draft = self._fallback_draft(learner, err)
            else:
                draft = NudgeDraft(
                    learner_id=learner.id,
                    text=text,
                    source=NudgeSource.ai,
                    status=NudgeStatus.sent,
                )

            nudge = await persist_nudge(self._store, draft, streamed=False)
            completed = True
        finally:
            self._release(learner.id, completed)

        return _response(nudge)

    async def stream_nudge(
        self, learner: LearnerSnapshot
    ) -> AsyncGenerator[NudgeStreamEvent, None]:
        """
        Streaming path: ``start``, any number of ``chunk`` events, then one
        terminal event (``complete``, or ``error`` followed by ``fallback``).

        The cooldown check runs on the first ``__anext__``, so a rejected
        request raises before any event is produced. Closing the iterator
        before the terminal event stops the upstream read and persists
        nothing.
        """
        self._cooldowns.acquire(learner.id)
        completed = False
        try:
            logger.info("Generating nudge for learner %s (streaming=True)", learner.id)
            yield StartEvent(learner_id=learner.id)

            prompt = build_nudge_prompt(learner)
            accumulated = ""
            failure: GenerationError | None = None
            fragments = self._client.stream(prompt)
            try:
                async for fragment in fragments:
                    accumulated += fragment
                    yield ChunkEvent(text=fragment, accumulated=accumulated)
            except GenerationError as err:
                failure = err
            finally:
                await fragments.aclose()

            text = accumulated.strip()
            if failure is None and not text:
                failure = MalformedResponseError("Stream produced only whitespace.")

            if failure is None:
                draft = NudgeDraft(
                    learner_id=learner.id,
                    text=text,
                    source=NudgeSource.ai,
                    status=NudgeStatus.sent,
                )
                nudge = await persist_nudge(self._store, draft, streamed=True)
                completed = True
                yield CompleteEvent(text=nudge.text, nudge_id=nudge.id)
                return

            logger.warning(
                "Streaming failed for learner %s (%s): %s",
                learner.id,
                failure.kind.value,
                failure.message,
            )
            yield ErrorEvent(message="Streaming failed, generating fallback...")
            nudge = await persist_nudge(
                self._store, self._fallback_draft(learner, failure), streamed=True
            )
            completed = True
            yield FallbackEvent(text=nudge.text, nudge_id=nudge.id)
        finally:
            if not completed:
                logger.info("Nudge stream for learner %s ended without a result", learner.id)
            self._release(learner.id, completed)

    async def history(self, learner_id: int) -> list[Nudge]:
        return await self._store.list_for_learner(learner_id)

    def _fallback_draft(self, learner: LearnerSnapshot, err: GenerationError) -> NudgeDraft:
        logger.warning(
            "AI generation failed for learner %s, using fallback (%s): %s",
            learner.id,
            err.kind.value,
            err.message,
        )
        reason = f"{err.kind.value}: {err.message}"
        try:
            text = self._fallback(learner, reason)
        except Exception:
            logger.exception("Fallback template failed for learner %s", learner.id)
            text = ""
        if not text.strip():
            text = emergency_nudge(learner)
            logger.warning("Used emergency fallback nudge for learner %s", learner.id)

        return NudgeDraft(
            learner_id=learner.id,
            text=text,
            source=NudgeSource.template,
            status=NudgeStatus.fallback,
        )

    def _release(self, learner_id: int, completed: bool) -> None:
        if completed:
            self._cooldowns.complete(learner_id)
        else:
            self._cooldowns.abandon(learner_id)


def _response(nudge: Nudge) -> NudgeResponse:
    return NudgeResponse(
        text=nudge.text,
        source=nudge.source,
        nudge_id=nudge.id,
        learner_id=nudge.learner_id,
    )
