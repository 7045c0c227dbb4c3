"""Scheduler data model and collaborator interfaces."""

from __future__ import annotations

import os
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from dropcron.config import settings

LOCK_KEY_PREFIX = "scheduler_lock_"
TASK_KEY_PREFIX = "scheduler_task_"

# Zero-argument task body; may be a plain function or a coroutine function.
TaskCallback = Callable[[], Awaitable[None] | None]


def default_holder_id() -> str:
    """Identity of this process as recorded in lock records."""
    return f"{socket.gethostname()}-{os.getpid()}"


class TaskState(Enum):
    """In-memory lifecycle of a ScheduledTask. Never persisted."""

    CONSTRUCTED = "constructed"
    SCHEDULED = "scheduled"
    EXECUTING = "executing"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Schedule:
    """The single active schedule of a task.

    Attributes:
        expression: Five-field crontab expression handed to the trigger engine.
        preset: Name of the fluent preset that produced it (``"daily_at"``,
            ``"hourly"``, ...), or None for a raw ``cron()`` expression.
    """

    expression: str
    preset: str | None = None

    @property
    def is_raw(self) -> bool:
        return self.preset is None


@dataclass(frozen=True)
class LockRecord:
    """Lock Record stored under ``scheduler_lock_<task name>``.

    There is no expiry field; a record is considered held while it is younger
    than the lock TTL and abandoned after that.
    """

    acquired_at: int
    holder: str

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.acquired_at

    def is_held(self, now_ms: int, ttl_ms: int) -> bool:
        return self.age_ms(now_ms) < ttl_ms

    def to_value(self) -> dict[str, Any]:
        return {"acquired_at": self.acquired_at, "holder": self.holder}

    @classmethod
    def from_value(cls, value: dict[str, Any]) -> LockRecord:
        return cls(acquired_at=int(value["acquired_at"]), holder=str(value.get("holder", "")))


@dataclass(frozen=True)
class TaskInfo:
    """Read-only projection of a task for introspection and admin views."""

    name: str
    owner: str | None
    schedule: str | None
    without_overlapping: bool


@dataclass(frozen=True)
class TaskMetadata:
    """Task Metadata Record stored under ``scheduler_task_<task name>``.

    Written by the executor process only, readable by any process; never used
    to decide whether a task runs.
    """

    name: str
    owner: str | None
    schedule: str | None
    without_overlapping: bool
    registered_at: int

    def to_value(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "owner": self.owner,
            "schedule": self.schedule,
            "without_overlapping": self.without_overlapping,
            "registered_at": self.registered_at,
        }

    @classmethod
    def from_value(cls, value: dict[str, Any]) -> TaskMetadata:
        return cls(
            name=value["name"],
            owner=value.get("owner"),
            schedule=value.get("schedule"),
            without_overlapping=bool(value.get("without_overlapping", True)),
            registered_at=int(value.get("registered_at", 0)),
        )


# -- Collaborator interfaces ---------------------------------------------------


@runtime_checkable
class KeyValueStore(Protocol):
    """Shared get/set/delete store used for locks and task metadata."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> bool: ...


@runtime_checkable
class TriggerHandle(Protocol):
    """A live registration with the trigger engine."""

    def stop(self) -> None: ...


@runtime_checkable
class TriggerRegistrar(Protocol):
    """Fires a callback at every instant matching a schedule."""

    def register(
        self, schedule: Schedule, on_fire: Callable[[], Awaitable[None]], *, name: str = ""
    ) -> TriggerHandle: ...


@runtime_checkable
class JobObserver(Protocol):
    """Optional sink recording execution lifecycle for operators."""

    async def create(self, descriptor: dict[str, Any]) -> Any: ...

    async def update(self, job_id: str, patch: dict[str, Any]) -> bool: ...


@dataclass
class SchedulerContext:
    """Collaborators shared by a registry and every task it creates.

    Attributes:
        store: Lock and metadata store.
        triggers: Trigger engine tasks register with on ``start()``.
        jobs: Optional job observer.
        lock_ttl_ms: Age after which a lock record is treated as abandoned.
        holder_id: This process's identity in lock records.
    """

    store: KeyValueStore
    triggers: TriggerRegistrar
    jobs: JobObserver | None = None
    lock_ttl_ms: int = field(default_factory=lambda: settings.scheduler_lock_ttl_ms)
    holder_id: str = field(default_factory=default_holder_id)
