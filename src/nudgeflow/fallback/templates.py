"""
Template-based nudge synthesis used whenever the AI path is unavailable.

Selection is deterministic: identical learner figures always produce the
identical message, so results are reproducible in tests and support tickets.
"""

from __future__ import annotations

import logging
import zlib

from nudgeflow.generation.prompts import MAX_NUDGE_CHARS, MIN_NUDGE_CHARS
from nudgeflow.learners.models import LearnerSnapshot, RiskLabel

logger = logging.getLogger(__name__)

# Longest first name that still keeps every template under MAX_NUDGE_CHARS.
_MAX_FIRST_NAME_CHARS = 24
_HIGH_RISK_MISSED_SESSIONS = 5

# (upper bound of completion band, encouragement, micro-action)
_COMPLETION_BANDS: tuple[tuple[float, str, str], ...] = (
    (25.0, "every journey starts with a single step", "start with one 5-minute lesson"),
    (50.0, "you're building great momentum", "complete one more module today"),
    (75.0, "you're over halfway there", "take a quick practice quiz"),
)
_FINAL_BAND = ("you're so close to the finish line", "finish strong with one final push")

TEMPLATES: tuple[str, ...] = (
    "Hey {name}, {encouragement}! Try to {action}. Small steps win!",
    "Hi {name}! {Encouragement}. Ready to {action}?",
    "{name}, {encouragement}! How about you {action}? You've got this!",
    "Quick nudge, {name}! {Encouragement}. Time to {action}?",
)

EMERGENCY_TEMPLATE = "Hi {name}, time for a quick study session! You've got this!"


def micro_action(learner: LearnerSnapshot) -> str:
    """The single suggested step for this learner's completion band."""
    return _band(learner)[1]


def encouragement(learner: LearnerSnapshot) -> str:
    phrase = _band(learner)[0]
    if (
        learner.risk_label == RiskLabel.high
        and learner.missed_sessions > _HIGH_RISK_MISSED_SESSIONS
    ):
        return "it's never too late to get back on track"
    if learner.risk_label == RiskLabel.low:
        return "keep up the excellent work"
    return phrase


def _band(learner: LearnerSnapshot) -> tuple[str, str]:
    for upper, phrase, action in _COMPLETION_BANDS:
        if learner.completion_pct < upper:
            return phrase, action
    return _FINAL_BAND


def _display_name(learner: LearnerSnapshot) -> str:
    return learner.first_name[:_MAX_FIRST_NAME_CHARS]


def template_index(first_name: str) -> int:
    """Stable across processes, unlike ``hash()``."""
    return zlib.crc32(first_name.lower().encode("utf-8")) % len(TEMPLATES)


def fallback_nudge(learner: LearnerSnapshot, reason: str = "") -> str:
    """Compose a template nudge. Never raises for a valid snapshot."""
    name = _display_name(learner)
    phrase = encouragement(learner)
    index = template_index(name)
    message = TEMPLATES[index].format(
        name=name,
        encouragement=phrase,
        Encouragement=phrase[:1].upper() + phrase[1:],
        action=micro_action(learner),
    )

    logger.info(
        "Generated fallback nudge for learner %s (template=%d, reason=%s, chars=%d)",
        learner.id,
        index,
        reason or "fallback",
        len(message),
    )
    return message


def emergency_nudge(learner: LearnerSnapshot) -> str:
    """Last-resort text when even the template path misbehaves."""
    return EMERGENCY_TEMPLATE.format(name=_display_name(learner))


def is_valid_nudge_text(text: str) -> bool:
    return MIN_NUDGE_CHARS <= len(text.strip()) <= MAX_NUDGE_CHARS
