"""Learner snapshot models and lookup collaborators."""

from .models import LearnerSnapshot, RiskLabel
from .repository import InMemoryLearnerRepository, LearnerRepository

__all__ = [
    "InMemoryLearnerRepository",
    "LearnerRepository",
    "LearnerSnapshot",
    "RiskLabel",
]
