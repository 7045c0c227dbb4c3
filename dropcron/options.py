"""OptionsStore — aiosqlite key-value table shared by every worker process.

Values are stored as JSON text. The store offers plain get / set / delete with
last-write-wins semantics and no native expiry; callers that need staleness
derive it from timestamps they store themselves.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import aiosqlite

from dropcron.config import settings

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS options (
    name TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""


class OptionsStore:
    """Persists named JSON values in SQLite.

    Singleton accessed via ``OptionsStore.shared()``.  Pass an explicit *db_path*
    for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    _instance: OptionsStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or settings.database_path
        self._initialised = False

    @classmethod
    def shared(cls) -> OptionsStore:
        """Return the shared OptionsStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        if not self._initialised:
            await db.execute(_CREATE_TABLE)
            await db.commit()
            self._initialised = True
        return db

    # -- Key-value API ---------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        """Return the decoded value stored under *key*, or None."""
        db = await self._connect()
        try:
            cursor = await db.execute("SELECT value FROM options WHERE name = ?", (key,))
            row = await cursor.fetchone()
            return json.loads(row[0]) if row else None
        finally:
            await db.close()

    async def set(self, key: str, value: Any) -> None:
        """Insert or overwrite the value stored under *key*."""
        now = datetime.now(UTC).isoformat()
        db = await self._connect()
        try:
            await db.execute(
                """
                INSERT INTO options (name, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, json.dumps(value), now),
            )
            await db.commit()
        finally:
            await db.close()

    async def delete(self, key: str) -> bool:
        """Delete *key*. Returns True if a row was removed."""
        db = await self._connect()
        try:
            cursor = await db.execute("DELETE FROM options WHERE name = ?", (key,))
            await db.commit()
            return cursor.rowcount > 0
        finally:
            await db.close()

    async def list_prefix(self, prefix: str) -> dict[str, Any]:
        """Return every key starting with *prefix*, mapped to its decoded value."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT name, value FROM options WHERE substr(name, 1, ?) = ? ORDER BY name",
                (len(prefix), prefix),
            )
            rows = await cursor.fetchall()
            return {name: json.loads(value) for name, value in rows}
        finally:
            await db.close()
