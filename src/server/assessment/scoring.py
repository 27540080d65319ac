"""Scoring of Likert answers into a total, a percentile and a communication style."""

from __future__ import annotations

from typing import Sequence

from .schemas import Answer, AssessmentDefinition, AssessmentResult, CommunicationStyle


class InvalidAnswers(ValueError):
    """Raised when answers do not fit the assessment they were submitted for."""


MAX_RATING = 5

# Bucket order breaks ties between equal totals.
_STYLES = ("direct", "empathetic", "analytical", "adaptive")

_STYLE_BY_QUESTION = {
    "q1": "direct",
    "q5": "direct",
    "q9": "direct",
    "q2": "empathetic",
    "q6": "empathetic",
    "q3": "analytical",
    "q7": "analytical",
    "q10": "analytical",
    "q4": "adaptive",
    "q8": "adaptive",
}


def classify_communication_style(answers: Sequence[Answer]) -> CommunicationStyle:
    totals = dict.fromkeys(_STYLES, 0)
    for answer in answers:
        style = _STYLE_BY_QUESTION.get(answer.question_id)
        if style is not None:
            totals[style] += answer.value

    ranked = sorted(_STYLES, key=lambda style: totals[style], reverse=True)
    return CommunicationStyle(primary=ranked[0].capitalize(), secondary=ranked[1].capitalize())


def percentile(total: int, max_score: int) -> int:
    """Share of the maximum score, rounded half up."""
    return (200 * total + max_score) // (2 * max_score)


def score_answers(definition: AssessmentDefinition, answers: Sequence[Answer]) -> AssessmentResult:
    known = {question.id for question in definition.questions}
    seen: set[str] = set()
    for answer in answers:
        if answer.question_id not in known:
            raise InvalidAnswers(f"Unknown question {answer.question_id} for test {definition.id}")
        if answer.question_id in seen:
            raise InvalidAnswers(f"Question {answer.question_id} answered more than once")
        seen.add(answer.question_id)

    max_score = len(definition.questions) * MAX_RATING
    total = sum(answer.value for answer in answers)
    share = percentile(total, max_score)
    style = classify_communication_style(answers)
    summary = (
        f"Your responses suggest a {style.primary} style with {style.secondary} tendencies. "
        f"You scored {total}/{max_score} ({share}%)."
    )
    return AssessmentResult(
        test_id=definition.id,
        score=total,
        max_score=max_score,
        percentile=share,
        style=style,
        summary=summary,
    )
