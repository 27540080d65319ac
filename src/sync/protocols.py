# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from typing import Callable, Optional, Protocol, Sequence

from .models import ChangeEvent, ChangeRow, SubmitResult

Unsubscribe = Callable[[], None]
EventHandler = Callable[[ChangeEvent], None]


class MessageStore(Protocol):
    """Read side of the durable message store plus its change feed."""

    async def load(self, conversation_id: str) -> Sequence[ChangeRow]:
        """Full history of a conversation ordered by time; raises ``StoreUnavailable``."""
        ...

    async def backfill(self, conversation_id: str, limit: int) -> Sequence[ChangeRow]:
        """The last ``limit`` messages ordered by time; raises ``StoreUnavailable``."""
        ...

    def subscribe(self, conversation_id: str, on_event: EventHandler) -> Unsubscribe:
        """Start delivering change events; the returned callable must be idempotent."""
        ...


class SubmissionEndpoint(Protocol):
    async def submit(self, conversation_id: Optional[str], content: str) -> SubmitResult:
        """Persist a user message and produce a reply; raises ``EndpointError``."""
        ...
