from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class ScaleLabels(BaseModel):
    left: str
    right: str


class AssessmentQuestion(BaseModel):
    id: str
    text: str
    type: Literal["likert"] = "likert"
    scale_labels: ScaleLabels


class AssessmentDefinition(BaseModel):
    id: str
    title: str
    description: str
    questions: list[AssessmentQuestion]


class AssessmentDefinitionResponse(BaseModel):
    test: AssessmentDefinition


class Answer(BaseModel):
    question_id: str
    value: int = Field(ge=1, le=5, description="Likert rating from 1 (disagree) to 5 (agree).")


class SubmitAssessmentRequest(BaseModel):
    test_id: Optional[str] = Field(default=None, description="Defaults to the current communication test.")
    answers: list[Answer] = Field(min_length=1)


class CommunicationStyle(BaseModel):
    primary: str
    secondary: str


class AssessmentResult(BaseModel):
    test_id: str
    score: int
    max_score: int
    percentile: int
    style: CommunicationStyle
    summary: str


class SubmitAssessmentResponse(BaseModel):
    result: AssessmentResult


class StoredAssessmentResult(BaseModel):
    id: str
    test_id: str
    score: int
    percentile: int
    summary: Optional[str] = None
    created_at: datetime


class AssessmentHistoryResponse(BaseModel):
    results: list[StoredAssessmentResult] = Field(default_factory=list)
