from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.server.auth import get_bearer_token, get_current_user_id
from src.server.dependencies import get_assessment_store

from .questions import get_assessment, get_default_assessment
from .schemas import (
    AssessmentDefinition,
    AssessmentDefinitionResponse,
    AssessmentHistoryResponse,
    StoredAssessmentResult,
    SubmitAssessmentRequest,
    SubmitAssessmentResponse,
)
from .scoring import InvalidAnswers, score_answers
from .store import SQLiteAssessmentStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tests", tags=["tests"])


@router.get("", response_model=AssessmentDefinitionResponse)
async def get_test(
    test_id: Optional[str] = Query(default=None, description="Defaults to the current communication test."),
) -> AssessmentDefinitionResponse:
    return AssessmentDefinitionResponse(test=_resolve_assessment(test_id))


@router.post("/results", response_model=SubmitAssessmentResponse)
async def submit_test(
    request: SubmitAssessmentRequest,
    user_id: Optional[str] = Depends(get_bearer_token),
    store: SQLiteAssessmentStore = Depends(get_assessment_store),
) -> SubmitAssessmentResponse:
    definition = _resolve_assessment(request.test_id)
    try:
        result = score_answers(definition, request.answers)
    except InvalidAnswers as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    # Anonymous callers get their score without it being kept.
    if user_id:
        try:
            await store.save_result(user_id, result, request.answers)
        except sqlite3.Error:
            logger.exception("Failed to store test result for %s", user_id)

    return SubmitAssessmentResponse(result=result)


@router.get("/results", response_model=AssessmentHistoryResponse)
async def list_test_results(
    user_id: str = Depends(get_current_user_id),
    store: SQLiteAssessmentStore = Depends(get_assessment_store),
) -> AssessmentHistoryResponse:
    records = await store.list_results(user_id)
    return AssessmentHistoryResponse(
        results=[
            StoredAssessmentResult(
                id=record.id,
                test_id=record.test_id,
                score=record.score,
                percentile=record.percentile,
                summary=record.summary,
                created_at=record.created_at,
            )
            for record in records
        ]
    )


def _resolve_assessment(test_id: Optional[str]) -> AssessmentDefinition:
    definition = get_assessment(test_id) if test_id else get_default_assessment()
    if definition is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Test not found")
    return definition
