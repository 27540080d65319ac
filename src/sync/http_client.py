# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""HTTP implementations of the message store and submission endpoint."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Literal, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from .errors import EndpointError, StoreUnavailable
from .models import ChangeEvent, ChangeRow, SubmitResult
from .protocols import EventHandler, Unsubscribe

logger = logging.getLogger(__name__)

TIMEOUT = httpx.Timeout(connect=5.0, read=60.0, write=10.0, pool=5.0)


class MessagePayload(BaseModel):
    id: str
    conversation_id: str
    role: Literal["user", "assistant", "system"]
    content: str
    analysis: Optional[dict[str, Any]] = None

    def to_row(self) -> ChangeRow:
        return ChangeRow(
            id=self.id,
            role=self.role,
            content=self.content,
            conversation_id=self.conversation_id,
            annotation=self.analysis,
        )


class MessageListPayload(BaseModel):
    conversation_id: str
    messages: list[MessagePayload] = Field(default_factory=list)


class ChatReplyPayload(BaseModel):
    reply: str = ""
    model: Optional[str] = None
    chat_id: str
    user_message_id: str
    assistant_message_id: Optional[str] = None
    error: Optional[str] = None


def _auth_headers(access_token: Optional[str]) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"} if access_token else {}


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(payload, dict):
        detail = payload.get("detail") or payload.get("error")
        if detail:
            return str(detail)
    return response.reason_phrase


async def iter_change_events(lines: AsyncIterator[str]) -> AsyncIterator[ChangeEvent]:
    """Parse a Server-Sent Events line stream into change events."""
    kind: Optional[str] = None
    data: list[str] = []
    async for line in lines:
        if line.startswith(":"):
            continue
        if line:
            field, _, value = line.partition(":")
            value = value[1:] if value.startswith(" ") else value
            if field == "event":
                kind = value
            elif field == "data":
                data.append(value)
            continue

        if kind in ("insert", "update") and data:
            try:
                row = MessagePayload.model_validate_json("\n".join(data)).to_row()
            except ValidationError as exc:
                logger.warning("Skipping malformed %s event: %s", kind, exc)
            else:
                yield ChangeEvent(kind=kind, row=row)
        kind, data = None, []


class HttpMessageStore:
    """Reads history over HTTP and follows the server's change-feed stream."""

    def __init__(self, client: httpx.AsyncClient, *, access_token: Optional[str] = None) -> None:
        self._client = client
        self._access_token = access_token

    async def load(self, conversation_id: str) -> list[ChangeRow]:
        return await self._fetch(conversation_id, None)

    async def backfill(self, conversation_id: str, limit: int) -> list[ChangeRow]:
        return await self._fetch(conversation_id, limit)

    def subscribe(self, conversation_id: str, on_event: EventHandler) -> Unsubscribe:
        task = asyncio.create_task(self._listen(conversation_id, on_event))

        def unsubscribe() -> None:
            if not task.done():
                task.cancel()

        return unsubscribe

    async def _fetch(self, conversation_id: str, limit: Optional[int]) -> list[ChangeRow]:
        params = {"limit": limit} if limit is not None else None
        try:
            response = await self._client.get(
                f"/api/conversations/{conversation_id}/messages",
                params=params,
                headers=_auth_headers(self._access_token),
                timeout=TIMEOUT,
            )
        except httpx.HTTPError as exc:
            raise StoreUnavailable(f"Failed to read conversation {conversation_id}: {exc}") from exc
        if response.is_error:
            raise StoreUnavailable(
                f"Reading conversation {conversation_id} failed with {response.status_code}: {_error_detail(response)}"
            )

        try:
            payload = MessageListPayload.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise StoreUnavailable(f"Invalid message list for conversation {conversation_id}: {exc}") from exc
        return [message.to_row() for message in payload.messages]

    async def _listen(self, conversation_id: str, on_event: EventHandler) -> None:
        url = f"/api/conversations/{conversation_id}/events"
        try:
            async with self._client.stream(
                "GET",
                url,
                headers={**_auth_headers(self._access_token), "Accept": "text/event-stream"},
                timeout=httpx.Timeout(TIMEOUT.connect, read=None),
            ) as response:
                if response.is_error:
                    logger.warning(
                        "Change feed for conversation %s rejected with %s", conversation_id, response.status_code
                    )
                    return
                async for event in iter_change_events(response.aiter_lines()):
                    try:
                        on_event(event)
                    except Exception:
                        logger.exception("Change feed handler failed on %s event for %s", event.kind, event.row.id)
        except httpx.HTTPError as exc:
            logger.warning("Change feed for conversation %s closed: %s", conversation_id, exc)
        logger.debug("Change feed for conversation %s ended", conversation_id)


class HttpSubmissionEndpoint:
    """Posts user messages to ``/api/chat``."""

    def __init__(self, client: httpx.AsyncClient, *, access_token: Optional[str] = None) -> None:
        self._client = client
        self._access_token = access_token

    async def submit(self, conversation_id: Optional[str], content: str) -> SubmitResult:
        body: dict[str, Any] = {"content": content}
        if conversation_id:
            body["chat_id"] = conversation_id

        try:
            response = await self._client.post(
                "/api/chat",
                json=body,
                headers=_auth_headers(self._access_token),
                timeout=TIMEOUT,
            )
        except httpx.HTTPError as exc:
            raise EndpointError(f"Failed to reach chat endpoint: {exc}") from exc
        if response.is_error:
            raise EndpointError(_error_detail(response), status_code=response.status_code)

        try:
            payload = ChatReplyPayload.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise EndpointError(f"Invalid chat response: {exc}", status_code=response.status_code) from exc

        return SubmitResult(
            conversation_id=payload.chat_id,
            user_message_id=payload.user_message_id,
            reply_text=payload.reply,
            assistant_message_id=payload.assistant_message_id,
            model=payload.model,
            error=payload.error,
        )
