# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Client-side reconciliation of the active conversation's message list.

Three sources feed the list: the initial history load, the synchronous
submission response and the asynchronous change feed (plus the backfill sweep
that re-reads recent rows). The same durable row can arrive through several of
them, so every merge is keyed on the durable id. Content matching is used only
to bridge the window in which an optimistic user message still carries its
temporary id; ties go to the most recent unmatched optimistic entry.

All mutation happens on the event loop thread between ``await`` points, so the
list is never observed half-updated.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, Mapping, Optional

from .errors import EndpointError, StoreUnavailable
from .models import ChangeEvent, ChangeRow, Message, SubmitResult, is_temporary_id, new_temporary_id
from .protocols import MessageStore, SubmissionEndpoint, Unsubscribe

logger = logging.getLogger(__name__)

SYSTEM_MESSAGE_ID = "sys"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
DEFAULT_BACKFILL_LIMIT = 10
DEFAULT_FAILURE_TEXT = "Failed to reach chatbot. Please try again."


class ReconciliationEngine:
    """Owns the ordered message list and pending annotations of one active conversation."""

    def __init__(
        self,
        store: MessageStore,
        endpoint: SubmissionEndpoint,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        backfill_limit: int = DEFAULT_BACKFILL_LIMIT,
        failure_text: str = DEFAULT_FAILURE_TEXT,
    ) -> None:
        if backfill_limit < 1:
            raise ValueError("backfill_limit must be positive")
        self._store = store
        self._endpoint = endpoint
        self._system_prompt = system_prompt
        self._backfill_limit = backfill_limit
        self._failure_text = failure_text

        self._conversation_id: Optional[str] = None
        self._messages: list[Message] = [self._system_entry()]
        self._pending: dict[str, dict[str, Any]] = {}
        self._unsubscribe: Optional[Unsubscribe] = None
        # Bumped on every conversation switch; results carrying an older epoch are dropped.
        self._epoch = 0

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def visible_messages(self) -> tuple[Message, ...]:
        return tuple(message for message in self._messages if message.role != "system")

    @property
    def pending_annotations(self) -> Mapping[str, dict[str, Any]]:
        return MappingProxyType(dict(self._pending))

    @property
    def is_subscribed(self) -> bool:
        return self._unsubscribe is not None

    async def activate(self, conversation_id: Optional[str]) -> bool:
        """Make ``conversation_id`` the active conversation, then load and backfill it."""
        loaded = await self.load(conversation_id)
        if loaded and conversation_id is not None:
            await self.backfill()
        return loaded

    async def load(self, conversation_id: Optional[str]) -> bool:
        """Replace the list with the stored history of ``conversation_id``.

        ``None`` means no conversation yet; one is adopted on the first submit.
        A different id switches conversations before the read starts, so the
        most recent call wins. Returns ``False`` when the read fails (the list
        keeps whatever it held after the switch) or when a later switch made
        the result stale.
        """
        if conversation_id != self._conversation_id:
            self._switch(conversation_id)

        epoch = self._epoch
        rows: list[ChangeRow] = []
        if conversation_id is not None:
            try:
                rows = list(await self._store.load(conversation_id))
            except StoreUnavailable as exc:
                logger.warning("Failed to load conversation %s: %s", conversation_id, exc)
                return False
            if epoch != self._epoch:
                logger.debug("Discarding stale load of conversation %s", conversation_id)
                return False

        messages = [self._system_entry()]
        seen: set[str] = set()
        for row in rows:
            if row.role == "system" or row.id in seen:
                continue
            seen.add(row.id)
            message = row.to_message()
            self._apply_pending(message)
            messages.append(message)
        self._messages = messages
        logger.debug("Loaded %d messages for conversation %s", len(messages) - 1, conversation_id)
        return True

    async def submit(self, content: str) -> Optional[Message]:
        """Send a user message, reconciling the endpoint's answer into the list.

        Returns the assistant-role message appended for this exchange (a reply or
        a locally synthesized error), or ``None`` when nothing was appended.
        """
        text = content.strip()
        if not text:
            return None

        epoch = self._epoch
        optimistic = Message(id=new_temporary_id(), role="user", content=text)
        temporary_id = optimistic.id
        self._messages.append(optimistic)

        try:
            result = await self._endpoint.submit(self._conversation_id, text)
        except EndpointError as exc:
            if epoch != self._epoch:
                logger.debug("Dropping failed submission from a previous conversation")
                return None
            logger.warning("Message submission failed: %s", exc)
            return self._append_failure(self._failure_text)

        if epoch != self._epoch:
            logger.debug("Dropping submission result for conversation %s", result.conversation_id)
            return None
        return self._apply_submit_result(temporary_id, result)

    def on_change_event(self, event: ChangeEvent) -> None:
        """Merge one change-feed event; duplicates and foreign rows are ignored."""
        row = event.row
        if self._conversation_id is None or row.conversation_id != self._conversation_id:
            return
        if row.role == "system":
            return

        if event.kind == "insert":
            self._reconcile_insert(row)
        elif event.kind == "update":
            self._reconcile_update(row)
        else:
            logger.debug("Ignoring change event of unknown kind %r", event.kind)

    async def backfill(self) -> int:
        """Re-read recent rows to catch events emitted before the feed was live.

        Returns the number of entries appended or upgraded.
        """
        conversation_id = self._conversation_id
        if conversation_id is None:
            return 0

        epoch = self._epoch
        try:
            rows = await self._store.backfill(conversation_id, self._backfill_limit)
        except StoreUnavailable as exc:
            logger.warning("Backfill of conversation %s failed: %s", conversation_id, exc)
            return 0
        if epoch != self._epoch:
            logger.debug("Discarding stale backfill of conversation %s", conversation_id)
            return 0

        changed = 0
        for row in rows:
            if row.conversation_id != conversation_id or row.role == "system":
                continue
            if self._reconcile_insert(row):
                changed += 1
                continue
            existing = self._find_by_id(row.id)
            if existing is not None and existing.annotation is None and row.annotation:
                existing.annotation = dict(row.annotation)
        if changed:
            logger.info("Backfill recovered %d messages for conversation %s", changed, conversation_id)
        return changed

    def close(self) -> None:
        self._teardown_subscription()

    def _switch(self, conversation_id: Optional[str]) -> None:
        self._teardown_subscription()
        self._epoch += 1
        if self._pending:
            logger.debug("Discarding %d pending annotations on conversation switch", len(self._pending))
        self._pending.clear()
        self._messages = [self._system_entry()]
        self._conversation_id = conversation_id
        if conversation_id is not None:
            self._subscribe(conversation_id)

    def _subscribe(self, conversation_id: str) -> None:
        self._unsubscribe = self._store.subscribe(conversation_id, self.on_change_event)
        logger.debug("Subscribed to change feed of conversation %s", conversation_id)

    def _teardown_subscription(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()

    def _apply_submit_result(self, temporary_id: str, result: SubmitResult) -> Optional[Message]:
        if self._conversation_id is not None and result.conversation_id != self._conversation_id:
            # The rows live in another conversation; the optimistic entry keeps its temporary id.
            logger.warning(
                "Endpoint stored the message in conversation %s instead of %s; ignoring its reply",
                result.conversation_id,
                self._conversation_id,
            )
            return None

        optimistic = self._find_by_id(temporary_id)
        if optimistic is not None and result.user_message_id:
            if self._find_by_id(result.user_message_id) is None:
                optimistic.id = result.user_message_id
                self._apply_pending(optimistic)
            else:
                # Another optimistic entry with the same text already took this id.
                logger.debug("User message %s already displayed; keeping %s", result.user_message_id, temporary_id)

        if self._conversation_id is None:
            self._conversation_id = result.conversation_id
            self._subscribe(result.conversation_id)
            logger.info("Adopted conversation %s", result.conversation_id)

        if result.error:
            logger.warning("Endpoint reported a failure: %s", result.error)
            return self._append_failure(result.error)

        if result.assistant_message_id is None:
            # The reply was produced but not persisted; it will never arrive on the feed.
            return self._append(Message(id=new_temporary_id("reply"), role="assistant", content=result.reply_text))

        existing = self._find_by_id(result.assistant_message_id)
        if existing is not None:
            return existing
        reply = Message(id=result.assistant_message_id, role="assistant", content=result.reply_text)
        self._apply_pending(reply)
        return self._append(reply)

    def _reconcile_insert(self, row: ChangeRow) -> bool:
        if self._find_by_id(row.id) is not None:
            return False

        if row.role == "user":
            optimistic = self._find_optimistic(row.content)
            if optimistic is not None:
                optimistic.id = row.id
                if optimistic.annotation is None and row.annotation:
                    optimistic.annotation = dict(row.annotation)
                self._apply_pending(optimistic)
                return True

        message = row.to_message()
        self._apply_pending(message)
        self._append(message)
        return True

    def _reconcile_update(self, row: ChangeRow) -> None:
        if not row.annotation:
            return

        target = self._find_by_id(row.id) or self._find_unannotated(row.content)
        if target is None:
            self._pending[row.id] = dict(row.annotation)
            logger.debug(
                "Reconciliation miss for message %s; queued annotation (%d pending)",
                row.id,
                len(self._pending),
            )
            return
        target.annotation = dict(row.annotation)

    def _apply_pending(self, message: Message) -> None:
        annotation = self._pending.pop(message.id, None)
        if annotation is not None:
            message.annotation = annotation

    def _append(self, message: Message) -> Message:
        self._messages.append(message)
        return message

    def _append_failure(self, text: str) -> Message:
        return self._append(Message(id=new_temporary_id("err"), role="assistant", content=text))

    def _find_by_id(self, message_id: str) -> Optional[Message]:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def _find_optimistic(self, content: str) -> Optional[Message]:
        for message in reversed(self._messages):
            if message.role == "user" and is_temporary_id(message.id) and message.content == content:
                return message
        return None

    def _find_unannotated(self, content: str) -> Optional[Message]:
        for message in reversed(self._messages):
            if message.role == "user" and message.annotation is None and message.content == content:
                return message
        return None

    def _system_entry(self) -> Message:
        return Message(id=SYSTEM_MESSAGE_ID, role="system", content=self._system_prompt)
