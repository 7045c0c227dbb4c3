"""Recurring task scheduler — tasks, locks, triggers, and the per-process registry."""

from dropcron.scheduler.locks import TaskLock
from dropcron.scheduler.models import (
    LockRecord,
    Schedule,
    SchedulerContext,
    TaskInfo,
    TaskMetadata,
    TaskState,
)
from dropcron.scheduler.registry import OwnerScope, SchedulerRegistry
from dropcron.scheduler.task import ScheduledTask, SchedulerConfigError
from dropcron.scheduler.triggers import TriggerEngine

__all__ = [
    "LockRecord",
    "OwnerScope",
    "Schedule",
    "ScheduledTask",
    "SchedulerConfigError",
    "SchedulerContext",
    "SchedulerRegistry",
    "TaskInfo",
    "TaskLock",
    "TaskMetadata",
    "TaskState",
    "TriggerEngine",
]
