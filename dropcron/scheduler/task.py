"""ScheduledTask — one task's schedule plus its locked per-firing protocol.

Usage::

    registry.call(refresh_counts, "refresh_badge_counts").every_minute()
    registry.call(cleanup, "daily_cleanup").daily_at("02:00")
    registry.call(report, "weekday_report").cron("0 9 * * 1-5")
"""

from __future__ import annotations

import inspect
import logging
import time
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from dropcron.scheduler.locks import TaskLock, now_ms
from dropcron.scheduler.models import Schedule, TaskInfo, TaskState

if TYPE_CHECKING:
    from dropcron.scheduler.models import SchedulerContext, TaskCallback, TriggerHandle

logger = logging.getLogger(__name__)


class SchedulerConfigError(ValueError):
    """A task cannot be started as configured."""


def _generate_name() -> str:
    return f"task_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class ScheduledTask:
    """A named callback with a cron schedule and overlap protection.

    Args:
        callback: Zero-argument callable; coroutine functions are awaited.
        context: Shared collaborators (store, trigger engine, job observer).
        name: Task name; generated when omitted.
        owner: Plugin/theme slug that registered the task, or None for core
            tasks. Fixed for the lifetime of the task.
    """

    def __init__(
        self,
        callback: TaskCallback,
        context: SchedulerContext,
        name: str | None = None,
        owner: str | None = None,
    ) -> None:
        self._callback = callback
        self._context = context
        self._owner = owner
        self._lock = TaskLock(context.store, context.holder_id, context.lock_ttl_ms)
        self._handles: list[TriggerHandle] = []
        self._running = 0
        self._stopped = False
        self._state = TaskState.CONSTRUCTED
        self.name = name or _generate_name()
        self.schedule: Schedule | None = None
        self.without_overlapping = True

    @property
    def owner(self) -> str | None:
        return self._owner

    @property
    def state(self) -> TaskState:
        return self._state

    @property
    def cron_expression(self) -> str | None:
        return self.schedule.expression if self.schedule else None

    def info(self) -> TaskInfo:
        return TaskInfo(
            name=self.name,
            owner=self._owner,
            schedule=self.cron_expression,
            without_overlapping=self.without_overlapping,
        )

    def __repr__(self) -> str:
        return (
            f"<ScheduledTask {self.name!r} owner={self._owner!r} "
            f"schedule={self.cron_expression!r}>"
        )

    # -- Fluent schedule builders ----------------------------------------------

    def _set_schedule(self, expression: str, preset: str | None) -> ScheduledTask:
        self.schedule = Schedule(expression=expression, preset=preset)
        return self

    def cron(self, expression: str) -> ScheduledTask:
        """Use a raw five-field crontab expression."""
        return self._set_schedule(expression, None)

    def every_minute(self) -> ScheduledTask:
        return self._set_schedule("* * * * *", "every_minute")

    def every_n_minutes(self, n: int) -> ScheduledTask:
        return self._set_schedule(f"*/{int(n)} * * * *", "every_n_minutes")

    def every_two_minutes(self) -> ScheduledTask:
        return self.every_n_minutes(2)

    def every_five_minutes(self) -> ScheduledTask:
        return self.every_n_minutes(5)

    def every_ten_minutes(self) -> ScheduledTask:
        return self.every_n_minutes(10)

    def every_fifteen_minutes(self) -> ScheduledTask:
        return self.every_n_minutes(15)

    def every_thirty_minutes(self) -> ScheduledTask:
        return self.every_n_minutes(30)

    def hourly(self) -> ScheduledTask:
        """Run at the start of every hour."""
        return self._set_schedule("0 * * * *", "hourly")

    def hourly_at(self, minute: int) -> ScheduledTask:
        return self._set_schedule(f"{int(minute)} * * * *", "hourly_at")

    def daily(self) -> ScheduledTask:
        """Run at midnight."""
        return self._set_schedule("0 0 * * *", "daily")

    def daily_at(self, time_of_day: str) -> ScheduledTask:
        """Run once a day at ``"HH:MM"`` (24-hour clock). Minute defaults to 0."""
        hour, _, minute = time_of_day.partition(":")
        return self._set_schedule(f"{int(minute or 0)} {int(hour)} * * *", "daily_at")

    def weekly(self) -> ScheduledTask:
        """Run on Sunday at midnight."""
        return self._set_schedule("0 0 * * 0", "weekly")

    def monthly(self) -> ScheduledTask:
        """Run on the first day of the month at midnight."""
        return self._set_schedule("0 0 1 * *", "monthly")

    def allow_overlapping(self) -> ScheduledTask:
        """Let a firing run even while a previous one still holds the lock."""
        self.without_overlapping = False
        return self

    def named(self, name: str) -> ScheduledTask:
        self.name = name
        return self

    # -- Trigger registration --------------------------------------------------

    def start(self) -> None:
        """Register with the trigger engine so every firing runs :meth:`execute`."""
        if self.schedule is None:
            msg = f"No schedule defined for task: {self.name}"
            raise SchedulerConfigError(msg)

        if self._handles:
            logger.warning(
                "Task %s started again; it now has %d triggers", self.name, len(self._handles) + 1
            )

        handle = self._context.triggers.register(self.schedule, self.execute, name=self.name)
        self._handles.append(handle)
        if self._running == 0:
            self._state = TaskState.SCHEDULED
        logger.info("Started task: %s (%s)", self.name, self.schedule.expression)

    def stop(self) -> None:
        """Deregister every trigger. In-flight executions run to completion."""
        if not self._handles:
            return
        for handle in self._handles:
            handle.stop()
        self._handles.clear()
        self._stopped = True
        self._state = TaskState.STOPPED
        logger.info("Stopped task: %s", self.name)

    def _idle_state(self) -> TaskState:
        if self._handles:
            return TaskState.SCHEDULED
        return TaskState.STOPPED if self._stopped else TaskState.CONSTRUCTED

    # -- Execution -------------------------------------------------------------

    async def execute(self) -> None:
        """Run one firing under the task lock. Never raises."""
        name = self.name
        now = now_ms()

        try:
            lock = await self._lock.read(name)
        except Exception:
            logger.exception("Could not read lock for task %s, skipping firing", name)
            return

        if self.without_overlapping and self._lock.is_held(lock, now):
            logger.info("Task %s is already running, skipping...", name)
            return

        job_id = f"scheduled_{name}_{now}"
        job_created = False
        acquired = False
        self._running += 1
        self._state = TaskState.EXECUTING
        try:
            await self._lock.acquire(name, now)
            acquired = True
            job_created = await self._job_create(job_id, name)

            logger.info("Executing task: %s", name)
            result = self._callback()
            if inspect.isawaitable(result):
                await result

            if job_created:
                await self._job_update(
                    job_id,
                    {"status": "completed", "progress": 100, "completed_at": datetime.now(UTC)},
                )
            logger.info("Completed task: %s", name)
        except Exception as exc:
            logger.exception("Error executing task %s", name)
            if job_created:
                await self._job_update(
                    job_id,
                    {"status": "failed", "error": str(exc), "completed_at": datetime.now(UTC)},
                )
        finally:
            if acquired:
                try:
                    await self._lock.release(name)
                except Exception:
                    logger.exception("Failed to release lock for %s", name)
            self._running -= 1
            if self._running == 0 and self._state is TaskState.EXECUTING:
                self._state = self._idle_state()

    async def _job_create(self, job_id: str, name: str) -> bool:
        jobs = self._context.jobs
        if jobs is None:
            return False
        try:
            await jobs.create(
                {
                    "id": job_id,
                    "type": "scheduled_task",
                    "title": f"Scheduled: {name}",
                    "status": "processing",
                    "progress": 0,
                    "metadata": {"task_name": name},
                }
            )
        except Exception:
            logger.exception("Failed to record job %s for task %s", job_id, name)
            return False
        return True

    async def _job_update(self, job_id: str, patch: dict) -> None:
        try:
            await self._context.jobs.update(job_id, patch)
        except Exception:
            logger.exception("Failed to update job %s", job_id)
