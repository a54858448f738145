"""Pydantic models for persisted nudges, responses and stream events."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class NudgeSource(str, Enum):
    """Who wrote the nudge text."""

    ai = "ai"
    template = "template"


class NudgeStatus(str, Enum):
    """Delivery status recorded alongside the nudge."""

    sent = "sent"
    fallback = "fallback"


class NudgeDraft(BaseModel):
    """A nudge ready to be written; storage assigns the id."""

    learner_id: int
    text: str
    source: NudgeSource
    status: NudgeStatus


class Nudge(BaseModel):
    """
    A persisted nudge. Created once per accepted generation request and never
    mutated afterwards.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    learner_id: int
    text: str
    source: NudgeSource
    status: NudgeStatus
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class NudgeResponse(BaseModel):
    """Body returned by the blocking entry point."""

    model_config = ConfigDict(populate_by_name=True)

    text: str
    source: NudgeSource
    nudge_id: int = Field(alias="nudgeId")
    learner_id: int = Field(alias="learnerId")


class StartEvent(BaseModel):
    type: Literal["start"] = "start"
    learner_id: int = Field(serialization_alias="learnerId")


class ChunkEvent(BaseModel):
    type: Literal["chunk"] = "chunk"
    text: str
    accumulated: str


class CompleteEvent(BaseModel):
    """Terminal frame when the AI stream finished cleanly."""

    type: Literal["complete"] = "complete"
    text: str
    source: NudgeSource = NudgeSource.ai
    nudge_id: int = Field(serialization_alias="nudgeId")


class ErrorEvent(BaseModel):
    """Announces that the AI stream failed; a ``fallback`` frame follows."""

    type: Literal["error"] = "error"
    message: str


class FallbackEvent(BaseModel):
    """Terminal frame carrying the persisted template nudge."""

    type: Literal["fallback"] = "fallback"
    text: str
    source: NudgeSource = NudgeSource.template
    nudge_id: int = Field(serialization_alias="nudgeId")


NudgeStreamEvent = Union[StartEvent, ChunkEvent, CompleteEvent, ErrorEvent, FallbackEvent]

TERMINAL_EVENT_TYPES = frozenset({"complete", "fallback"})
