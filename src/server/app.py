# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from src.config import get_bool_env, get_int_env, get_str_env
from src.llms.llm import get_llm_by_type
from src.server.assessment.router import router as assessment_router
from src.server.auth import get_current_user_id
from src.server.conversation.analysis import annotate_message
from src.server.conversation.models import ConversationRecord, MessageRecord
from src.server.conversation.router import router as conversation_router
from src.server.conversation.schemas import ChatRequest, ChatResponse, HealthResponse
from src.server.conversation.store import SQLiteConversationStore
from src.server.dependencies import get_conversation_store, initialise_stores
from src.server.partners.router import router as partners_router

logger = logging.getLogger(__name__)

REPLY_FAILED_DETAIL = "Failed to generate a reply"


@asynccontextmanager
async def lifespan(_: FastAPI):
    stores = initialise_stores()
    await stores.init()
    try:
        yield
    finally:
        await stores.close()


app = FastAPI(
    title="Counsel Chat API",
    description="Relationship counseling chat backend",
    version="0.1.0",
    lifespan=lifespan,
)

allowed_origins_str = get_str_env("ALLOWED_ORIGINS", "http://localhost:8081")
allowed_origins = [origin.strip() for origin in allowed_origins_str.split(",")]

logger.info(f"Allowed origins: {allowed_origins}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=get_bool_env("CORS_ALLOW_CREDENTIALS", True),
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "x-supabase-auth"],
)

app.include_router(conversation_router)
app.include_router(partners_router)
app.include_router(assessment_router)


@app.get("/api/_health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(ok=True)


@app.post("/api/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    store: SQLiteConversationStore = Depends(get_conversation_store),
) -> ChatResponse:
    conversation = await _resolve_conversation(store, request.chat_id, user_id)

    try:
        user_message = await store.append_message(
            conversation_id=conversation.id,
            user_id=user_id,
            role="user",
            content=request.content,
        )
    except sqlite3.Error:
        logger.exception("Failed to store user message")
        raise HTTPException(status_code=500, detail="Failed to store user message")

    # Analysis runs after the response is sent and reaches clients via the change feed.
    background_tasks.add_task(annotate_message, store, user_message.id, user_message.content)

    history_limit = get_int_env("CHAT_HISTORY_LIMIT", 30)
    history = await store.get_recent_messages(conversation.id, history_limit)

    try:
        llm = get_llm_by_type("basic", request.model)
        ai_message = await llm.ainvoke(_to_langchain_messages(history))
    except Exception as e:
        logger.exception(f"Error generating reply for conversation {conversation.id}: {str(e)}")
        return ChatResponse(
            reply="",
            chat_id=conversation.id,
            user_message_id=user_message.id,
            error=REPLY_FAILED_DETAIL,
        )

    reply = ai_message.content if isinstance(ai_message.content, str) else str(ai_message.content)
    model = (getattr(ai_message, "response_metadata", None) or {}).get("model_name") or llm.model_name

    assistant_message: Optional[MessageRecord] = None
    try:
        assistant_message = await store.append_message(
            conversation_id=conversation.id,
            user_id=user_id,
            role="assistant",
            content=reply,
        )
    except sqlite3.Error:
        logger.exception("Failed to store assistant message")

    return ChatResponse(
        reply=reply,
        model=model,
        chat_id=conversation.id,
        user_message_id=user_message.id,
        assistant_message_id=assistant_message.id if assistant_message else None,
    )


async def _resolve_conversation(
    store: SQLiteConversationStore, chat_id: Optional[str], user_id: str
) -> ConversationRecord:
    """Return the caller's conversation, starting a new one when the id is unknown or foreign."""
    if chat_id:
        conversation = await store.get_conversation(chat_id)
        if conversation is not None and conversation.user_id == user_id:
            return conversation
        logger.info("Conversation %s unavailable for caller; starting a new one", chat_id)

    try:
        return await store.create_conversation(user_id)
    except sqlite3.Error:
        logger.exception("Failed to create conversation")
        raise HTTPException(status_code=500, detail="Failed to create conversation")


def _to_langchain_messages(history: List[MessageRecord]) -> List[BaseMessage]:
    messages: List[BaseMessage] = []
    for record in history:
        if record.role == "user":
            messages.append(HumanMessage(content=record.content))
        elif record.role == "assistant":
            messages.append(AIMessage(content=record.content))
        elif record.role == "system":
            messages.append(SystemMessage(content=record.content))
    return messages
