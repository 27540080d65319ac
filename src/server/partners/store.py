from __future__ import annotations

import asyncio
import logging
from typing import Optional

from src.server.database import SQLiteStore, utc_now_str

logger = logging.getLogger(__name__)


class PartnerLinkError(ValueError):
    """Raised when two users cannot be linked as partners."""


_PROFILES_DDL = """
CREATE TABLE IF NOT EXISTS profiles (
    user_id TEXT PRIMARY KEY,
    partner_id TEXT REFERENCES profiles(user_id) ON DELETE SET NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class SQLitePartnerStore(SQLiteStore):
    """Profiles with at most one partner each; links are always symmetric."""

    schema = (
        _PROFILES_DDL,
        "CREATE INDEX IF NOT EXISTS idx_profiles_partner ON profiles(partner_id);",
    )

    async def get_partner(self, user_id: str) -> Optional[str]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT partner_id FROM profiles WHERE user_id = ?",
            (user_id,),
        )
        return row["partner_id"] if row else None

    async def link_partners(self, user_id: str, partner_id: str) -> None:
        """Link both users to each other, creating their profiles on demand."""
        if user_id == partner_id:
            raise PartnerLinkError("Cannot partner with yourself")

        now = utc_now_str()

        def _link() -> None:
            with self._connect() as connection:
                for profile_id in (user_id, partner_id):
                    connection.execute(
                        "INSERT OR IGNORE INTO profiles (user_id, partner_id, created_at, updated_at) "
                        "VALUES (?, NULL, ?, ?)",
                        (profile_id, now, now),
                    )

                def current_partner(profile_id: str) -> Optional[str]:
                    row = connection.execute(
                        "SELECT partner_id FROM profiles WHERE user_id = ?", (profile_id,)
                    ).fetchone()
                    return row["partner_id"]

                if current_partner(user_id) is not None:
                    raise PartnerLinkError("You already have a partner")
                if current_partner(partner_id) is not None:
                    raise PartnerLinkError("Partner already linked")

                for profile_id, linked_id in ((user_id, partner_id), (partner_id, user_id)):
                    connection.execute(
                        "UPDATE profiles SET partner_id = ?, updated_at = ? WHERE user_id = ?",
                        (linked_id, now, profile_id),
                    )
                connection.commit()

        async with self._write_lock:
            await asyncio.to_thread(_link)
        logger.info("Linked partners %s and %s", user_id, partner_id)

    async def unlink_partner(self, user_id: str) -> Optional[str]:
        """Clear the link on both sides; returns the former partner, if any."""
        now = utc_now_str()

        def _unlink() -> Optional[str]:
            with self._connect() as connection:
                row = connection.execute(
                    "SELECT partner_id FROM profiles WHERE user_id = ?", (user_id,)
                ).fetchone()
                partner_id = row["partner_id"] if row else None
                connection.execute(
                    "UPDATE profiles SET partner_id = NULL, updated_at = ? WHERE user_id = ? OR user_id = ?",
                    (now, user_id, partner_id),
                )
                connection.commit()
                return partner_id

        async with self._write_lock:
            return await asyncio.to_thread(_unlink)
