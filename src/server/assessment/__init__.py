"""Relationship self-assessments: definitions, scoring and stored results."""

from .questions import get_assessment, get_default_assessment
from .scoring import score_answers
from .store import SQLiteAssessmentStore

__all__ = ["SQLiteAssessmentStore", "get_assessment", "get_default_assessment", "score_answers"]
