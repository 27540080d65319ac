"""Process-wide stores resolved by the API routers.

Conversations, partner profiles and self-assessment results share one SQLite
file named by ``COUNSEL_DB_PATH``. The app lifespan builds and initialises the
stores once; tests swap them with ``set_stores``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from src.config import get_str_env
from src.server.assessment.store import SQLiteAssessmentStore
from src.server.conversation.store import SQLiteConversationStore
from src.server.partners.store import SQLitePartnerStore

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "counsel.db"


@dataclass(slots=True)
class Stores:
    conversations: SQLiteConversationStore
    partners: SQLitePartnerStore
    assessments: SQLiteAssessmentStore

    async def init(self) -> None:
        for store in (self.conversations, self.partners, self.assessments):
            await store.init()

    async def close(self) -> None:
        for store in (self.conversations, self.partners, self.assessments):
            await store.close()


_STORES: Optional[Stores] = None


def build_stores(db_path: Optional[str] = None) -> Stores:
    path = db_path or get_str_env("COUNSEL_DB_PATH", DEFAULT_DB_PATH)
    return Stores(
        conversations=SQLiteConversationStore(path),
        partners=SQLitePartnerStore(path),
        assessments=SQLiteAssessmentStore(path),
    )


def initialise_stores() -> Stores:
    """Return the installed stores, building them from configuration on first use."""
    global _STORES
    if _STORES is None:
        _STORES = build_stores()
        logger.info("Using database %s", _STORES.conversations.db_path)
    return _STORES


def set_stores(stores: Optional[Stores]) -> None:
    global _STORES
    _STORES = stores


def _require_stores() -> Stores:
    if _STORES is None:
        raise RuntimeError("Stores have not been initialised")
    return _STORES


def get_conversation_store() -> SQLiteConversationStore:
    return _require_stores().conversations


def get_partner_store() -> SQLitePartnerStore:
    return _require_stores().partners


def get_assessment_store() -> SQLiteAssessmentStore:
    return _require_stores().assessments
