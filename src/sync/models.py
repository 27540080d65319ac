# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

from dataclasses import dataclass
from itertools import count
from typing import Any, Literal, Optional
from uuid import uuid4

Role = Literal["system", "user", "assistant"]
ChangeKind = Literal["insert", "update"]

# Durable ids are hyphenated UUIDs; temporary ids never contain the separator.
DURABLE_ID_SEPARATOR = "-"

_temporary_counter = count(1)


def new_temporary_id(prefix: str = "local") -> str:
    return f"{prefix}{next(_temporary_counter)}{uuid4().hex[:8]}"


def is_temporary_id(message_id: str) -> bool:
    return DURABLE_ID_SEPARATOR not in message_id


@dataclass(slots=True)
class Message:
    id: str
    role: Role
    content: str
    annotation: Optional[dict[str, Any]] = None


@dataclass(slots=True, frozen=True)
class ChangeRow:
    id: str
    role: Role
    content: str
    conversation_id: str
    annotation: Optional[dict[str, Any]] = None

    def to_message(self) -> Message:
        annotation = dict(self.annotation) if self.annotation else None
        return Message(id=self.id, role=self.role, content=self.content, annotation=annotation)


@dataclass(slots=True, frozen=True)
class ChangeEvent:
    kind: ChangeKind
    row: ChangeRow


@dataclass(slots=True, frozen=True)
class SubmitResult:
    conversation_id: str
    user_message_id: str
    reply_text: str
    assistant_message_id: Optional[str] = None
    model: Optional[str] = None
    error: Optional[str] = None
