"""Partner linking between two users of the app."""

from .store import PartnerLinkError, SQLitePartnerStore

__all__ = ["PartnerLinkError", "SQLitePartnerStore"]
