"""Job data model — one entry per observed background execution."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

JOB_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
FINISHED_STATUSES = ("completed", "failed", "cancelled")


@dataclass
class Job:
    """A background job as shown to operators.

    Attributes:
        job_id: Caller-chosen identifier (e.g. ``scheduled_<task>_<epoch ms>``).
        type: Job category, e.g. ``"scheduled_task"``.
        title: Human-readable title.
        status: One of :data:`JOB_STATUSES`.
        progress: Percentage complete, clamped to 0–100.
        metadata: Free-form JSON details.
        error: Error message for failed jobs.
        created_at: ISO 8601 timestamp.
        updated_at: ISO 8601 timestamp of the last change.
        completed_at: ISO 8601 timestamp once the job finished.
    """

    job_id: str
    type: str
    title: str
    status: str = "pending"
    progress: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    error: str = ""
    created_at: str = ""
    updated_at: str = ""
    completed_at: str | None = None

    def __post_init__(self) -> None:
        if self.status not in JOB_STATUSES:
            msg = f"Unknown job status: {self.status}"
            raise ValueError(msg)
        self.progress = min(100, max(0, int(self.progress)))
        if not self.created_at:
            self.created_at = datetime.now(UTC).isoformat()
        if not self.updated_at:
            self.updated_at = self.created_at

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``jobs`` column order."""
        return (
            self.job_id,
            self.type,
            self.title,
            self.status,
            self.progress,
            json.dumps(self.metadata),
            self.error,
            self.created_at,
            self.updated_at,
            self.completed_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> Job:
        """Deserialize from a SQLite row tuple."""
        return cls(
            job_id=row[0],
            type=row[1],
            title=row[2],
            status=row[3],
            progress=row[4],
            metadata=json.loads(row[5]) if row[5] else {},
            error=row[6] or "",
            created_at=row[7],
            updated_at=row[8],
            completed_at=row[9],
        )
