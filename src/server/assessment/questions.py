"""Self-assessment definitions served to the app."""

from __future__ import annotations

from typing import Optional

from .schemas import AssessmentDefinition, AssessmentQuestion, ScaleLabels

_AGREEMENT = ScaleLabels(left="Disagree", right="Agree")

_COMMUNICATION_STATEMENTS = [
    ("q1", "I say what I think even if it may cause disagreement."),
    ("q2", "I prioritize preserving relationships over being right."),
    ("q3", "I organize my thoughts before speaking and prefer structure."),
    ("q4", "I adapt my message based on the other person's reactions."),
    ("q5", "I am comfortable being brief and direct."),
    ("q6", "I often check in on how others are feeling during conversations."),
    ("q7", "I value accuracy and clarity over speed when communicating."),
    ("q8", "I tend to mirror the tone and pace of the other person."),
    ("q9", "I am comfortable giving constructive feedback directly."),
    ("q10", "I ask clarifying questions to ensure shared understanding."),
]

COMMUNICATION_V1 = AssessmentDefinition(
    id="communication-v1",
    title="Communication Style Self-Assessment",
    description="Rate how strongly you identify with each statement (1=Strongly disagree, 5=Strongly agree).",
    questions=[
        AssessmentQuestion(id=question_id, text=text, scale_labels=_AGREEMENT)
        for question_id, text in _COMMUNICATION_STATEMENTS
    ],
)

_ASSESSMENTS = {COMMUNICATION_V1.id: COMMUNICATION_V1}


def get_assessment(assessment_id: str) -> Optional[AssessmentDefinition]:
    return _ASSESSMENTS.get(assessment_id)


def get_default_assessment() -> AssessmentDefinition:
    return COMMUNICATION_V1
