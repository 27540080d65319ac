from __future__ import annotations

import asyncio
import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence
from uuid import uuid4

from src.server.database import SQLiteStore, parse_ts, utc_now_str

from .schemas import Answer, AssessmentResult


@dataclass(slots=True)
class AssessmentRecord:
    id: str
    user_id: str
    test_id: str
    answers: list[dict]
    score: int
    percentile: int
    summary: Optional[str]
    created_at: datetime


_RESULTS_DDL = """
CREATE TABLE IF NOT EXISTS test_results (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    test_id TEXT NOT NULL,
    answers TEXT NOT NULL,
    score INTEGER NOT NULL,
    percentile INTEGER NOT NULL,
    summary TEXT,
    created_at TEXT NOT NULL
);
"""

_RESULT_COLUMNS = "id, user_id, test_id, answers, score, percentile, summary, created_at"


class SQLiteAssessmentStore(SQLiteStore):
    """Persists scored self-assessments per user."""

    schema = (
        _RESULTS_DDL,
        "CREATE INDEX IF NOT EXISTS idx_test_results_user ON test_results(user_id, created_at);",
    )

    async def save_result(self, user_id: str, result: AssessmentResult, answers: Sequence[Answer]) -> AssessmentRecord:
        now = utc_now_str()
        record = AssessmentRecord(
            id=str(uuid4()),
            user_id=user_id,
            test_id=result.test_id,
            answers=[answer.model_dump() for answer in answers],
            score=result.score,
            percentile=result.percentile,
            summary=result.summary,
            created_at=parse_ts(now),
        )

        async with self._write_lock:
            await asyncio.to_thread(
                self._execute,
                f"INSERT INTO test_results ({_RESULT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.user_id,
                    record.test_id,
                    json.dumps(record.answers),
                    record.score,
                    record.percentile,
                    record.summary,
                    now,
                ),
            )
        return record

    async def list_results(self, user_id: str) -> list[AssessmentRecord]:
        """Return the user's results, newest first."""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_RESULT_COLUMNS} FROM test_results WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
            (user_id,),
        )
        return [self._row_to_record(row) for row in rows]

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> AssessmentRecord:
        return AssessmentRecord(
            id=row["id"],
            user_id=row["user_id"],
            test_id=row["test_id"],
            answers=json.loads(row["answers"]),
            score=row["score"],
            percentile=row["percentile"],
            summary=row["summary"],
            created_at=parse_ts(row["created_at"]),
        )
