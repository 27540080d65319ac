from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from src.server.auth import get_current_user_id
from src.server.dependencies import get_conversation_store

from .models import ChangeEvent, ConversationRecord, MessageRecord
from .schemas import ConversationMessage, MessageListResponse
from .store import SQLiteConversationStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/conversations", tags=["conversations"])

_KEEPALIVE_SECONDS = 15.0


@router.get("/{conversation_id}/messages", response_model=MessageListResponse)
async def list_messages(
    conversation_id: str,
    limit: Optional[int] = Query(
        default=None,
        ge=1,
        le=500,
        description="Return only the most recent N messages (oldest first).",
    ),
    user_id: str = Depends(get_current_user_id),
    store: SQLiteConversationStore = Depends(get_conversation_store),
) -> MessageListResponse:
    await _require_owned_conversation(store, conversation_id, user_id)
    if limit is None:
        records = await store.get_messages(conversation_id)
    else:
        records = await store.get_recent_messages(conversation_id, limit)
    return MessageListResponse(
        conversation_id=conversation_id,
        messages=[to_message(record) for record in records],
    )


@router.get("/{conversation_id}/events")
async def stream_events(
    conversation_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    store: SQLiteConversationStore = Depends(get_conversation_store),
) -> StreamingResponse:
    await _require_owned_conversation(store, conversation_id, user_id)
    queue, unsubscribe = store.feed.subscribe(conversation_id)
    return StreamingResponse(
        _event_stream(request, queue, unsubscribe),
        media_type="text/event-stream",
    )


async def _event_stream(request: Request, queue: asyncio.Queue[ChangeEvent], unsubscribe) -> AsyncIterator[str]:
    try:
        # Flushes headers so the client knows the subscription is live.
        yield ": subscribed\n\n"
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=_KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield _make_event(event)
    finally:
        unsubscribe()


def _make_event(event: ChangeEvent) -> str:
    row = to_message(event.message)
    return f"event: {event.kind}\ndata: {row.model_dump_json()}\n\n"


async def _require_owned_conversation(
    store: SQLiteConversationStore, conversation_id: str, user_id: str
) -> ConversationRecord:
    conversation = await store.get_conversation(conversation_id)
    if conversation is None or conversation.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


def to_message(record: MessageRecord) -> ConversationMessage:
    return ConversationMessage(
        id=record.id,
        conversation_id=record.conversation_id,
        role=record.role,
        content=record.content,
        analysis=record.analysis,
        seq=record.seq,
        created_at=record.created_at,
    )
