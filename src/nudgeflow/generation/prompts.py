"""Deterministic prompt builder for nudge generation."""

from __future__ import annotations

from nudgeflow.learners.models import LearnerSnapshot

MIN_NUDGE_CHARS = 20
MAX_NUDGE_CHARS = 160

_EXAMPLE_MICRO_STEPS = (
    "Complete one 5-minute lesson",
    "Take a quick practice quiz",
    "Review yesterday's notes",
    "Watch one short video",
)


def _format_pct(value: float) -> str:
    return f"{value:g}"


def build_nudge_prompt(learner: LearnerSnapshot) -> str:
    """
    Construct the coaching prompt sent to the text-generation provider.

    The prompt carries every metric the model needs to personalise the
    message and pins the output format to bare nudge text.
    """
    sections: list[str] = [
        "You are a friendly, encouraging educational coach. "
        "Generate a personalized nudge for this learner:",
        "",
        f"Learner: {learner.name}",
        f"Progress: {_format_pct(learner.completion_pct)}% complete",
        f"Quiz Performance: {_format_pct(learner.quiz_avg)}% average",
        f"Missed Sessions: {learner.missed_sessions}",
        f"Risk level: {learner.risk_label.value}",
        "",
        "Requirements:",
        f"- Write a short, encouraging message ({MIN_NUDGE_CHARS}-{MAX_NUDGE_CHARS} characters)",
        "- Include exactly ONE clear, actionable micro-step",
        "- Use an upbeat, supportive tone",
        f"- Address the learner by their first name ({learner.first_name})",
        "- Focus on small, achievable actions",
        "",
        "Examples of good micro-steps:",
    ]
    sections += [f'- "{step}"' for step in _EXAMPLE_MICRO_STEPS]
    sections += [
        "",
        "Generate only the nudge text, no explanations or formatting.",
    ]
    return "\n".join(sections)
