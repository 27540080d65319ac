"""In-process change feed fanning message inserts/updates out to subscribers."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Callable

from .models import ChangeEvent

logger = logging.getLogger(__name__)

_DEFAULT_QUEUE_SIZE = 256


class ChangeFeed:
    """Per-conversation broadcast of :class:`ChangeEvent` objects.

    Delivery is at-least-once from the consumer's point of view: a client that
    reconnects may observe the same row again through a history read.
    """

    def __init__(self, queue_size: int = _DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue[ChangeEvent]]] = defaultdict(set)

    def subscribe(self, conversation_id: str) -> tuple[asyncio.Queue[ChangeEvent], Callable[[], None]]:
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[conversation_id].add(queue)
        logger.debug("Change feed subscriber added for conversation %s", conversation_id)

        def unsubscribe() -> None:
            queues = self._subscribers.get(conversation_id)
            if queues is None or queue not in queues:
                return
            queues.discard(queue)
            if not queues:
                self._subscribers.pop(conversation_id, None)
            logger.debug("Change feed subscriber removed for conversation %s", conversation_id)

        return queue, unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        for queue in list(self._subscribers.get(event.message.conversation_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Dropping %s event for message %s: subscriber queue full",
                    event.kind,
                    event.message.id,
                )

    def subscriber_count(self, conversation_id: str) -> int:
        return len(self._subscribers.get(conversation_id, ()))
