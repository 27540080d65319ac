"""Conversation persistence, change feed and read APIs."""

from .feed import ChangeFeed
from .store import SQLiteConversationStore

__all__ = ["ChangeFeed", "SQLiteConversationStore"]
