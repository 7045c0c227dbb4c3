"""
Task lock management on top of the shared key-value store.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from dropcron.scheduler.models import LOCK_KEY_PREFIX, LockRecord

if TYPE_CHECKING:
    from dropcron.scheduler.models import KeyValueStore

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def lock_key(task_name: str) -> str:
    return f"{LOCK_KEY_PREFIX}{task_name}"


class TaskLock:
    """Reads and writes Lock Records for overlap protection.

    Acquisition is plain read-then-write: two processes racing between
    :meth:`read` and :meth:`acquire` can both proceed.
    """

    def __init__(self, store: KeyValueStore, holder_id: str, ttl_ms: int) -> None:
        self._store = store
        self._holder_id = holder_id
        self._ttl_ms = ttl_ms

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    async def read(self, task_name: str) -> LockRecord | None:
        """Return the current lock record for *task_name*, held or stale."""
        value = await self._store.get(lock_key(task_name))
        if not value:
            return None
        try:
            return LockRecord.from_value(value)
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed lock record for %s: %r", task_name, value)
            return None

    def is_held(self, record: LockRecord | None, at_ms: int) -> bool:
        """True if *record* exists and is younger than the TTL."""
        return record is not None and record.is_held(at_ms, self._ttl_ms)

    async def acquire(self, task_name: str, at_ms: int) -> LockRecord:
        """Write (or overwrite) the lock record with this process as holder."""
        record = LockRecord(acquired_at=at_ms, holder=self._holder_id)
        await self._store.set(lock_key(task_name), record.to_value())
        return record

    async def release(self, task_name: str) -> bool:
        """Delete the lock record. Returns True if one was removed."""
        return await self._store.delete(lock_key(task_name))
