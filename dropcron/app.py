"""Worker bootstrap — builds the scheduler, loads extensions, runs until signalled."""

from __future__ import annotations

import asyncio
import logging
import signal

from dropcron.config import settings
from dropcron.extensions import ExtensionError, ExtensionManager
from dropcron.jobs.store import JobStore
from dropcron.options import OptionsStore
from dropcron.scheduler.models import SchedulerContext
from dropcron.scheduler.registry import SchedulerRegistry
from dropcron.scheduler.triggers import TriggerEngine

logger = logging.getLogger(__name__)

# Module-level references so _post_shutdown can reach them.
_registry: SchedulerRegistry | None = None
_extensions: ExtensionManager | None = None


def _init_scheduler() -> SchedulerRegistry:
    """Create the registry and its collaborators from settings."""
    context = SchedulerContext(
        store=OptionsStore.shared(),
        triggers=TriggerEngine(),
        jobs=JobStore.get(),
        lock_ttl_ms=settings.scheduler_lock_ttl_ms,
    )
    return SchedulerRegistry(context, is_executor=settings.is_executor())


def register_core_tasks(registry: SchedulerRegistry, jobs: JobStore) -> None:
    """Register the unowned tasks every installation runs."""

    async def _purge_finished_jobs() -> None:
        await jobs.purge_finished(settings.job_retention_days)

    registry.call(_purge_finished_jobs, "purge_finished_jobs").daily_at("02:00")


async def _activate_extensions(manager: ExtensionManager) -> None:
    """Load and activate configured plugins, then the theme. Failures are logged."""
    modules = [(path, "plugin") for path in settings.get_active_plugins()]
    if settings.active_theme.strip():
        modules.append((settings.active_theme.strip(), "theme"))

    for module_path, kind in modules:
        try:
            extension = manager.load(module_path, kind=kind)
            await manager.activate(extension)
        except ExtensionError:
            logger.exception("Skipping %s %s", kind, module_path)


async def _post_init() -> None:
    """Build the scheduler, register every task, then start triggering."""
    global _registry, _extensions  # noqa: PLW0603
    _registry = _init_scheduler()
    _extensions = ExtensionManager(_registry)

    register_core_tasks(_registry, _registry.context.jobs)
    await _activate_extensions(_extensions)

    _registry.start_all()
    if _registry.is_executor:
        _registry.context.triggers.start()
    logger.info(
        "Scheduler initialized on worker %d (executor=%s, tasks=%d)",
        settings.worker_id,
        _registry.is_executor,
        len(_registry.tasks),
    )


async def _post_shutdown() -> None:
    """Stop triggers and wait for pending metadata writes."""
    global _registry, _extensions  # noqa: PLW0603
    if _registry is None:
        return
    _registry.stop_all()
    await _registry.flush()
    _registry.context.triggers.stop()
    _registry = None
    _extensions = None


async def run() -> None:
    """Run the worker until SIGINT or SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await _post_init()
    try:
        await stop.wait()
    finally:
        await _post_shutdown()


def main() -> None:
    """Entry point for ``dropcron-worker``."""
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, settings.log_level),
    )
    logger.info("Starting dropcron worker %d...", settings.worker_id)
    asyncio.run(run())


if __name__ == "__main__":
    main()
