"""SQLite plumbing shared by the server's stores.

Every store keeps its tables in the same database file and talks to it through
short-lived connections run on a worker thread, so the event loop never blocks
on disk I/O. Writes within one store are serialised by an ``asyncio.Lock``.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

logger = logging.getLogger(__name__)


def _ensure_pragmas(connection: sqlite3.Connection) -> None:
    connection.execute("PRAGMA foreign_keys = ON;")
    connection.execute("PRAGMA journal_mode = WAL;")


def normalise_db_path(db_path: str) -> str:
    path = Path(db_path)
    if not path.is_absolute():
        path = Path.cwd() / path
    if path.suffix != ".db":
        path = path.with_suffix(".db")
    return str(path)


class SQLiteStore:
    """Base class for stores; subclasses list their DDL in ``schema``."""

    schema: Sequence[str] = ()

    def __init__(self, db_path: str) -> None:
        self._db_path = normalise_db_path(db_path)
        self._write_lock = asyncio.Lock()

    @property
    def db_path(self) -> str:
        return self._db_path

    async def init(self) -> None:
        """Create this store's tables and indexes if they do not exist."""
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        def _init() -> None:
            with self._connect() as connection:
                for statement in self.schema:
                    connection.execute(statement)
                connection.commit()

        await asyncio.to_thread(_init)
        logger.info("%s initialised at %s", type(self).__name__, self._db_path)

    async def close(self) -> None:  # pragma: no cover - connections are per call
        return None

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        _ensure_pragmas(connection)
        return connection

    def _execute(self, query: str, params: tuple = ()) -> None:
        with self._connect() as connection:
            connection.execute(query, params)
            connection.commit()

    def _fetchall(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._connect() as connection:
            return connection.execute(query, params).fetchall()

    def _fetchone(self, query: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._connect() as connection:
            return connection.execute(query, params).fetchone()


def utc_now_str() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


def parse_ts(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1]
    return datetime.fromisoformat(value)
