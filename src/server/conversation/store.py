from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from typing import Any, Optional
from uuid import uuid4

from src.server.database import SQLiteStore, parse_ts, utc_now_str

from .feed import ChangeFeed
from .models import ChangeEvent, ConversationRecord, MessageRecord

logger = logging.getLogger(__name__)


_CONVERSATIONS_DDL = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""

_MESSAGES_DDL = """
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    user_id TEXT,
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
    content TEXT NOT NULL,
    analysis TEXT,
    seq INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY(conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
);
"""

_MESSAGE_COLUMNS = "id, conversation_id, user_id, role, content, analysis, seq, created_at"


class SQLiteConversationStore(SQLiteStore):
    """SQLite-backed message store that publishes every write on a change feed."""

    schema = (
        _CONVERSATIONS_DDL,
        _MESSAGES_DDL,
        "CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id);",
        "CREATE INDEX IF NOT EXISTS idx_messages_conversation_seq ON messages(conversation_id, seq);",
    )

    def __init__(self, db_path: str, feed: Optional[ChangeFeed] = None) -> None:
        super().__init__(db_path)
        self._feed = feed or ChangeFeed()

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    async def create_conversation(self, user_id: str) -> ConversationRecord:
        conversation_id = str(uuid4())
        now = utc_now_str()

        async with self._write_lock:
            await asyncio.to_thread(
                self._execute,
                "INSERT INTO conversations (id, user_id, created_at) VALUES (?, ?, ?)",
                (conversation_id, user_id, now),
            )

        return ConversationRecord(id=conversation_id, user_id=user_id, created_at=parse_ts(now))

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT id, user_id, created_at FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        if row is None:
            return None
        return ConversationRecord(id=row["id"], user_id=row["user_id"], created_at=parse_ts(row["created_at"]))

    async def get_messages(self, conversation_id: str) -> list[MessageRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conversation_id = ? ORDER BY seq ASC",
            (conversation_id,),
        )
        return [self._row_to_message(row) for row in rows]

    async def get_recent_messages(self, conversation_id: str, limit: int) -> list[MessageRecord]:
        """Return the last ``limit`` messages, still ordered oldest first."""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conversation_id = ? ORDER BY seq DESC LIMIT ?",
            (conversation_id, limit),
        )
        return [self._row_to_message(row) for row in reversed(rows)]

    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?",
            (message_id,),
        )
        return self._row_to_message(row) if row else None

    async def append_message(
        self,
        *,
        conversation_id: str,
        role: str,
        content: str,
        user_id: Optional[str] = None,
        analysis: Optional[dict[str, Any]] = None,
    ) -> MessageRecord:
        message_id = str(uuid4())
        now = utc_now_str()
        analysis_json = json.dumps(analysis) if analysis else None

        async with self._write_lock:
            def _insert() -> int:
                with self._connect() as connection:
                    row = connection.execute(
                        "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM messages WHERE conversation_id = ?",
                        (conversation_id,),
                    ).fetchone()
                    next_seq = int(row["max_seq"] or 0) + 1

                    connection.execute(
                        f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        (message_id, conversation_id, user_id, role, content, analysis_json, next_seq, now),
                    )
                    connection.commit()
                    return next_seq

            seq = await asyncio.to_thread(_insert)

        record = MessageRecord(
            id=message_id,
            conversation_id=conversation_id,
            user_id=user_id,
            role=role,
            content=content,
            analysis=json.loads(analysis_json) if analysis_json else None,
            seq=seq,
            created_at=parse_ts(now),
        )
        self._feed.publish(ChangeEvent(kind="insert", message=record))
        return record

    async def update_message_analysis(self, message_id: str, analysis: dict[str, Any]) -> Optional[MessageRecord]:
        async with self._write_lock:
            await asyncio.to_thread(
                self._execute,
                "UPDATE messages SET analysis = ? WHERE id = ?",
                (json.dumps(analysis), message_id),
            )

        record = await self.get_message(message_id)
        if record is None:
            logger.warning("Analysis update targeted unknown message %s", message_id)
            return None
        self._feed.publish(ChangeEvent(kind="update", message=record))
        return record

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> MessageRecord:
        return MessageRecord(
            id=row["id"],
            conversation_id=row["conversation_id"],
            user_id=row["user_id"],
            role=row["role"],
            content=row["content"],
            analysis=json.loads(row["analysis"]) if row["analysis"] else None,
            seq=row["seq"],
            created_at=parse_ts(row["created_at"]),
        )
