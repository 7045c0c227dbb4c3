"""TriggerEngine — APScheduler-backed cron trigger registration."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from dropcron.config import settings

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from dropcron.scheduler.models import Schedule

logger = logging.getLogger(__name__)


class CronHandle:
    """One registration with the engine. ``stop()`` is safe to repeat."""

    def __init__(self, scheduler: AsyncIOScheduler, job_id: str) -> None:
        self._scheduler = scheduler
        self.job_id = job_id
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        try:
            self._scheduler.remove_job(self.job_id)
        except JobLookupError:
            logger.debug("Job %s not found in scheduler (may already be removed)", self.job_id)


class TriggerEngine:
    """Owns the APScheduler instance and maps schedules to cron jobs.

    Args:
        timezone: IANA timezone string (default from settings, normally UTC).
        max_instances: How many concurrent firings of one registration
            APScheduler allows. Kept above 1 so overlap is decided by the
            task lock rather than by APScheduler.
    """

    def __init__(self, timezone: str | None = None, max_instances: int | None = None) -> None:
        self._timezone = timezone or settings.scheduler_timezone
        self._max_instances = max_instances or settings.trigger_max_instances
        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # -- Lifecycle -------------------------------------------------------------

    def start(self) -> None:
        """Start firing. Registrations made before start are kept."""
        if self._running:
            return
        self._scheduler.start()
        self._running = True
        logger.info(
            "Trigger engine started with %d job(s) (tz=%s)",
            len(self._scheduler.get_jobs()),
            self._timezone,
        )

    def stop(self) -> None:
        """Shut down the scheduler. In-flight callbacks are not cancelled."""
        if self._running:
            self._scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Trigger engine stopped")

    # -- Registration ----------------------------------------------------------

    def build_trigger(self, schedule: Schedule) -> CronTrigger:
        """Convert a schedule to an APScheduler trigger. Raises ValueError if invalid."""
        return CronTrigger.from_crontab(schedule.expression, timezone=self._timezone)

    def register(
        self,
        schedule: Schedule,
        on_fire: Callable[[], Awaitable[None]],
        *,
        name: str = "",
    ) -> CronHandle:
        """Fire *on_fire* at every instant matching *schedule*."""
        trigger = self.build_trigger(schedule)
        job_id = uuid.uuid4().hex
        job = self._scheduler.add_job(
            on_fire,
            trigger=trigger,
            id=job_id,
            name=name or job_id,
            misfire_grace_time=None,
            max_instances=self._max_instances,
        )
        return CronHandle(self._scheduler, job.id)
