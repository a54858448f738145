"""Pydantic models for learner snapshots consumed by the nudge pipeline."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class RiskLabel(str, Enum):
    """Risk band assigned to a learner by the dashboard scoring step."""

    low = "low"
    medium = "medium"
    high = "high"


class LearnerSnapshot(BaseModel):
    """
    Read-only view of a learner's progress at the time a nudge is requested.

    Snapshots are frozen so a single generation request always works against
    the same figures.
    """

    model_config = ConfigDict(frozen=True)

    id: int = Field(gt=0, description="Learner identifier")
    name: str = Field(max_length=100, description="Display name")
    completion_pct: float = Field(ge=0.0, le=100.0, description="Course completion (0-100)")
    quiz_avg: float = Field(ge=0.0, le=100.0, description="Quiz average (0-100)")
    missed_sessions: int = Field(ge=0, description="Sessions missed so far")
    risk_label: RiskLabel = RiskLabel.medium

    @property
    def first_name(self) -> str:
        parts = self.name.split()
        return parts[0] if parts else "Learner"
