from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Optional

ChangeKind = Literal["insert", "update"]


@dataclass(slots=True)
class ConversationRecord:
    id: str
    user_id: str
    created_at: datetime


@dataclass(slots=True)
class MessageRecord:
    id: str
    conversation_id: str
    user_id: Optional[str]
    role: str
    content: str
    analysis: Optional[dict[str, Any]]
    seq: int
    created_at: datetime


@dataclass(slots=True)
class ChangeEvent:
    kind: ChangeKind
    message: MessageRecord
