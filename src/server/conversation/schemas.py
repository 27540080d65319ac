from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class ConversationMessage(BaseModel):
    id: str
    conversation_id: str
    role: Literal["user", "assistant", "system"]
    content: str
    analysis: Optional[dict[str, Any]] = None
    seq: int
    created_at: datetime


class MessageListResponse(BaseModel):
    conversation_id: str
    messages: list[ConversationMessage] = Field(default_factory=list)


class ChatRequest(BaseModel):
    chat_id: Optional[str] = Field(
        default=None,
        description="Existing conversation id; a new conversation is created when omitted or invalid.",
    )
    content: str = Field(min_length=1, description="User message text.")
    model: Optional[str] = Field(default=None, description="Override the configured chat model.")

    @field_validator("content")
    @classmethod
    def validate_content(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Content must not be blank")
        return value

    @field_validator("chat_id")
    @classmethod
    def normalise_chat_id(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            return str(UUID(value))
        except ValueError:
            raise ValueError("chat_id must be a UUID") from None


class ChatResponse(BaseModel):
    reply: str
    model: Optional[str] = None
    chat_id: str
    user_message_id: str
    assistant_message_id: Optional[str] = None
    error: Optional[str] = Field(
        default=None,
        description="Set when the user message was stored but no reply could be produced.",
    )


class HealthResponse(BaseModel):
    ok: bool
