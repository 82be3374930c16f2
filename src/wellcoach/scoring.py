"""Exercise response scoring and learner feedback.

Every exercise type maps to a scorer ``(responses, exercise) -> int`` returning
a 0-100 score. Types without a dedicated scorer use :func:`completeness_score`,
which credits each answered field. Dedicated scorers only handle responses in
their own shape and defer to :func:`completeness_score` otherwise.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from .models import Exercise

Scorer = Callable[[Mapping[str, Any], Exercise | None], int]

BOOKKEEPING_FIELDS = frozenset(
    {"timeSpent", "time_spent", "completedAt", "completed_at", "totalWords", "total_words"}
)
FIELD_MAX_POINTS = 2

FEEDBACK_BANDS: tuple[tuple[int, str], ...] = (
    (
        90,
        "Excellent work! Your responses show deep reflection and engagement with the material. "
        "You're demonstrating strong commitment to your wellness journey.",
    ),
    (
        70,
        "Great job! Your responses show good understanding and effort. "
        "Consider adding more detail to deepen your insights.",
    ),
    (
        50,
        "Good start! Your responses show engagement with the exercise. "
        "Try to provide more detailed reflections for maximum benefit.",
    ),
    (
        0,
        "You've completed the exercise! For the most benefit, consider revisiting some sections "
        "and providing more detailed responses.",
    ),
)


def is_answered(value: Any) -> bool:
    """Return whether one response value counts as a non-empty answer."""
    if value is None:
        return False
    if isinstance(value, bool):
        return True
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, int | float):
        return value > 0
    if isinstance(value, Mapping | Sequence | set | frozenset):
        return len(value) > 0
    return True


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _percentage(earned: int, fields: int) -> int:
    if fields == 0:
        return 100
    return min(100, _round_half_up(100 * earned / (fields * FIELD_MAX_POINTS)))


def completeness_score(responses: Mapping[str, Any], exercise: Exercise | None = None) -> int:
    """Score by counting answered fields.

    A nested ``responses`` mapping (reflection-style submissions) replaces the
    top-level fields; only its non-blank strings earn credit. No scorable
    fields at all scores 100, so completion-only exercises such as timers get
    full credit.
    """
    nested = responses.get("responses")
    if isinstance(nested, Mapping):
        earned = sum(FIELD_MAX_POINTS for value in nested.values() if isinstance(value, str) and value.strip())
        return _percentage(earned, len(nested))

    fields = 0
    earned = 0
    for key, value in responses.items():
        if key in BOOKKEEPING_FIELDS:
            continue
        fields += 1
        if is_answered(value):
            earned += FIELD_MAX_POINTS
    return _percentage(earned, fields)


def quiz_score(responses: Mapping[str, Any], exercise: Exercise | None = None) -> int:
    """Grade ``responses["answers"]`` against configured correct answers."""
    answers = responses.get("answers")
    questions = exercise.config.get("questions") if exercise is not None else None
    if not isinstance(answers, Mapping) or not isinstance(questions, list):
        return completeness_score(responses, exercise)
    graded = [item for item in questions if isinstance(item, Mapping) and "correctAnswer" in item and "id" in item]
    if not graded:
        return completeness_score(responses, exercise)
    correct = sum(1 for item in graded if _answer_matches(answers.get(str(item["id"])), item["correctAnswer"]))
    return _round_half_up(100 * correct / len(graded))


def _answer_matches(given: Any, expected: Any) -> bool:
    if isinstance(expected, list):
        if not isinstance(given, list):
            return False
        return _multiset(given) == _multiset(expected)
    return given == expected


def _multiset(items: list[Any]) -> list[Any]:
    # Order-insensitive; duplicates count.
    return sorted(items, key=repr)


def wellness_wheel_score(responses: Mapping[str, Any], exercise: Exercise | None = None) -> int:
    """Score the share of configured wellness categories that received a rating."""
    ratings = responses.get("ratings")
    categories = exercise.config.get("categories") if exercise is not None else None
    if (
        not isinstance(ratings, list)
        or not ratings
        or not all(isinstance(item, Mapping) and "category" in item for item in ratings)
        or not isinstance(categories, list)
        or not categories
    ):
        return completeness_score(responses, exercise)
    rated = {str(item["category"]) for item in ratings if is_answered(item.get("rating"))}
    covered = sum(1 for category in categories if str(category) in rated)
    return _round_half_up(100 * covered / len(categories))


SCORERS: dict[str, Scorer] = {
    "quiz_assessment": quiz_score,
    "wellness_wheel": wellness_wheel_score,
}


def score_responses(
    responses: Mapping[str, Any],
    exercise: Exercise | None = None,
    scorers: Mapping[str, Scorer] | None = None,
) -> int:
    """Score a submission with the scorer registered for the exercise type."""
    registry = SCORERS if scorers is None else scorers
    scorer = registry.get(exercise.type, completeness_score) if exercise is not None else completeness_score
    return max(0, min(100, int(scorer(responses, exercise))))


def feedback_for_score(score: int, bands: Sequence[tuple[int, str]] = FEEDBACK_BANDS) -> str:
    """Return feedback for the highest band threshold the score reaches."""
    ordered = sorted(bands, key=lambda band: band[0], reverse=True)
    for threshold, message in ordered:
        if score >= threshold:
            return message
    return ordered[-1][1]
