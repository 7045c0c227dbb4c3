"""JobStore — aiosqlite CRUD for observed job entries."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import aiosqlite

from dropcron.config import settings
from dropcron.jobs.models import FINISHED_STATUSES, Job

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    status TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    metadata TEXT NOT NULL DEFAULT '{}',
    error TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
)
"""

# Patch keys accepted by update(), mapped to their column.
_PATCHABLE = {
    "status": "status",
    "progress": "progress",
    "error": "error",
    "metadata": "metadata",
    "completed_at": "completed_at",
    "title": "title",
}


def _normalise(key: str, value: Any) -> Any:
    if key == "metadata":
        return json.dumps(value or {})
    if key == "progress":
        return min(100, max(0, int(value)))
    if key == "completed_at" and isinstance(value, datetime):
        return value.isoformat()
    if key == "error":
        return value or ""
    return value


class JobStore:
    """Records job lifecycle (processing / completed / failed) for operators.

    Satisfies the scheduler's job observer interface through :meth:`create`
    and :meth:`update`.  Singleton accessed via ``JobStore.get()``; pass an
    explicit *db_path* for test isolation.
    """

    _instance: JobStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or settings.database_path
        self._initialised = False

    @classmethod
    def get(cls) -> JobStore:
        """Return the shared JobStore instance."""
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

    # -- Observer API ----------------------------------------------------------

    async def create(self, descriptor: dict[str, Any]) -> Job:
        """Insert a job from a descriptor dict. ``id`` and ``title`` are required."""
        job = Job(
            job_id=descriptor["id"],
            type=descriptor.get("type", "generic"),
            title=descriptor["title"],
            status=descriptor.get("status", "pending"),
            progress=descriptor.get("progress", 0),
            metadata=descriptor.get("metadata") or {},
        )
        db = await self._connect()
        try:
            await db.execute(
                """
                INSERT INTO jobs
                    (job_id, type, title, status, progress, metadata, error,
                     created_at, updated_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                job.to_row(),
            )
            await db.commit()
            logger.debug("Created job: %s (%s)", job.title, job.job_id)
            return job
        finally:
            await db.close()

    async def update(self, job_id: str, patch: dict[str, Any]) -> bool:
        """Apply *patch* to a job. Returns True if a row was updated.

        Unknown keys raise ``KeyError`` so typos never silently drop state.
        """
        unknown = set(patch) - set(_PATCHABLE)
        if unknown:
            msg = f"Unknown job fields: {', '.join(sorted(unknown))}"
            raise KeyError(msg)

        assignments = [f"{_PATCHABLE[key]} = ?" for key in patch]
        params = [_normalise(key, value) for key, value in patch.items()]
        assignments.append("updated_at = ?")
        params.append(datetime.now(UTC).isoformat())

        db = await self._connect()
        try:
            cursor = await db.execute(
                f"UPDATE jobs SET {', '.join(assignments)} WHERE job_id = ?",  # noqa: S608
                (*params, job_id),
            )
            await db.commit()
            return cursor.rowcount > 0
        finally:
            await db.close()

    # -- Queries ---------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job | None:
        """Fetch a job by ID, or None if not found."""
        db = await self._connect()
        try:
            cursor = await db.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,))
            row = await cursor.fetchone()
            return Job.from_row(row) if row else None
        finally:
            await db.close()

    async def list_jobs(self, status: str | None = None, limit: int = 50) -> list[Job]:
        """Return the newest jobs, optionally filtered by status."""
        db = await self._connect()
        try:
            if status:
                cursor = await db.execute(
                    "SELECT * FROM jobs WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                    (status, limit),
                )
            else:
                cursor = await db.execute(
                    "SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?", (limit,)
                )
            rows = await cursor.fetchall()
            return [Job.from_row(row) for row in rows]
        finally:
            await db.close()

    async def purge_finished(self, older_than_days: int) -> int:
        """Delete finished jobs last updated more than *older_than_days* ago."""
        cutoff = (datetime.now(UTC) - timedelta(days=older_than_days)).isoformat()
        placeholders = ", ".join("?" for _ in FINISHED_STATUSES)
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"DELETE FROM jobs WHERE status IN ({placeholders}) AND updated_at < ?",  # noqa: S608
                (*FINISHED_STATUSES, cutoff),
            )
            await db.commit()
            removed = cursor.rowcount
            if removed:
                logger.info(
                    "Purged %d finished job(s) older than %d day(s)", removed, older_than_days
                )
            return removed
        finally:
            await db.close()
