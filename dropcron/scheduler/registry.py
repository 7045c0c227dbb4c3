"""SchedulerRegistry — the per-process set of scheduled tasks.

Every worker registers the same tasks; only the executor worker starts their
triggers and persists task metadata. Tasks registered while an extension is
initialising are owned by that extension and can be torn down together.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextvars import ContextVar
from typing import TYPE_CHECKING

from dropcron.scheduler.locks import now_ms
from dropcron.scheduler.models import TASK_KEY_PREFIX, TaskMetadata
from dropcron.scheduler.task import ScheduledTask

if TYPE_CHECKING:
    from collections.abc import Iterator

    from dropcron.scheduler.models import SchedulerContext, TaskCallback, TaskInfo

logger = logging.getLogger(__name__)


def task_key(task_name: str) -> str:
    return f"{TASK_KEY_PREFIX}{task_name}"


class OwnerScope:
    """Registers tasks on behalf of one plugin or theme.

    Handed to extension code instead of the registry so ownership is explicit
    and cannot be changed by the caller.
    """

    def __init__(self, registry: SchedulerRegistry, owner: str) -> None:
        self._registry = registry
        self._owner = owner

    @property
    def owner(self) -> str:
        return self._owner

    def call(self, callback: TaskCallback, name: str | None = None) -> ScheduledTask:
        """Register *callback* as a task owned by this scope."""
        return self._registry._register(callback, name, self._owner)

    def get_tasks(self) -> list[TaskInfo]:
        return self._registry.get_tasks_by_owner(self._owner)


class SchedulerRegistry:
    """Owns this process's ScheduledTask instances.

    Args:
        context: Collaborators shared with every task.
        is_executor: True for the single worker allowed to fire callbacks.
            Supplied by the process topology, never computed here.
    """

    def __init__(self, context: SchedulerContext, is_executor: bool = False) -> None:
        self._context = context
        self._is_executor = is_executor
        self._tasks: list[ScheduledTask] = []
        self._current_owner: ContextVar[str | None] = ContextVar(
            f"scheduler_owner_{id(self)}", default=None
        )
        self._pending: set[asyncio.Task] = set()

    @property
    def is_executor(self) -> bool:
        return self._is_executor

    @property
    def context(self) -> SchedulerContext:
        return self._context

    @property
    def tasks(self) -> tuple[ScheduledTask, ...]:
        return tuple(self._tasks)

    # -- Ownership (lifecycle orchestrator only) -------------------------------

    def _set_owner(self, owner: str) -> None:
        """Make *owner* the owner of tasks registered from the current context."""
        self._current_owner.set(owner)

    def _clear_owner(self) -> None:
        self._current_owner.set(None)

    @property
    def current_owner(self) -> str | None:
        return self._current_owner.get()

    @contextlib.contextmanager
    def owned_by(self, owner: str) -> Iterator[OwnerScope]:
        """Bracket extension initialisation; the owner is cleared on every exit path."""
        token = self._current_owner.set(owner)
        try:
            yield OwnerScope(self, owner)
        finally:
            self._current_owner.reset(token)

    def for_owner(self, owner: str) -> OwnerScope:
        """Return a scope whose ``call()`` registers tasks owned by *owner*."""
        if not owner:
            msg = "Owner must be a non-empty plugin or theme slug"
            raise ValueError(msg)
        return OwnerScope(self, owner)

    # -- Registration ----------------------------------------------------------

    def call(self, callback: TaskCallback, name: str | None = None) -> ScheduledTask:
        """Register *callback* and return its task for schedule chaining.

        The task is owned by the ambient owner, if one is set. It is not
        started until :meth:`start_all`.
        """
        return self._register(callback, name, self._current_owner.get())

    def _register(
        self, callback: TaskCallback, name: str | None, owner: str | None
    ) -> ScheduledTask:
        task = ScheduledTask(callback, self._context, name=name, owner=owner)
        if any(existing.name == task.name for existing in self._tasks):
            logger.warning(
                "Task name %s is already registered; both tasks will share its lock", task.name
            )
        self._tasks.append(task)

        if self._is_executor:
            self._persist_in_background(task)

        return task

    def _persist_in_background(self, task: ScheduledTask) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; metadata for task %s not persisted", task.name)
            return
        pending = loop.create_task(self._register_task_metadata(task))
        self._pending.add(pending)
        pending.add_done_callback(self._pending.discard)

    async def _register_task_metadata(self, task: ScheduledTask) -> None:
        """Upsert the task's metadata record for cross-worker visibility."""
        record = TaskMetadata(
            name=task.name,
            owner=task.owner,
            schedule=task.cron_expression,
            without_overlapping=task.without_overlapping,
            registered_at=now_ms(),
        )
        try:
            await self._context.store.set(task_key(task.name), record.to_value())
        except Exception:
            logger.exception("Failed to register task %s in store", task.name)

    async def _unregister_task_metadata(self, task: ScheduledTask) -> None:
        try:
            await self._context.store.delete(task_key(task.name))
        except Exception:
            logger.exception("Failed to unregister task %s from store", task.name)

    async def flush(self) -> None:
        """Wait for background metadata writes started by :meth:`call`."""
        if self._pending:
            await asyncio.gather(*self._pending)

    # -- Lifecycle -------------------------------------------------------------

    def start_all(self) -> None:
        """Start every registered task. Does nothing on non-executor workers."""
        if not self._is_executor:
            return

        logger.info("Starting %d scheduled task(s)...", len(self._tasks))
        for task in self._tasks:
            try:
                task.start()
            except Exception:
                logger.exception("Failed to start task %s", task.name)

    def stop_all(self) -> None:
        """Stop every task and forget them. Used at process shutdown."""
        logger.info("Stopping all scheduled tasks...")
        for task in self._tasks:
            try:
                task.stop()
            except Exception:
                logger.exception("Failed to stop task %s", task.name)
        self._tasks.clear()

    async def teardown_tasks_by_owner(self, owner: str | None) -> int:
        """Stop and remove every task owned by a plugin or theme.

        Unowned (core) tasks are never removed: an empty or "none" owner is
        refused. Tasks already removed by a concurrent teardown are skipped.
        Returns the number of tasks removed.
        """
        if not owner or owner == "none":
            logger.warning("Cannot teardown tasks: no owner specified")
            return 0

        to_remove = [task for task in self._tasks if task.owner == owner]
        if not to_remove:
            logger.info("No tasks found for owner: %s", owner)
            return 0

        if self._is_executor:
            # Let queued metadata writes land before their records are deleted.
            await self.flush()

        removed = 0
        for task in to_remove:
            if task not in self._tasks:
                continue
            try:
                task.stop()
            except Exception:
                logger.exception("Failed to stop task %s", task.name)
            self._tasks.remove(task)
            removed += 1
            if self._is_executor:
                await self._unregister_task_metadata(task)
            logger.info("Removed task: %s", task.name)

        logger.info("Removed %d task(s) for owner: %s", removed, owner)
        return removed

    # -- Introspection ---------------------------------------------------------

    def get_tasks(self) -> list[TaskInfo]:
        """Projection of every registered task."""
        return [task.info() for task in self._tasks]

    def get_tasks_by_owner(self, owner: str | None) -> list[TaskInfo]:
        """Projection of the tasks whose owner equals *owner*."""
        return [task.info() for task in self._tasks if task.owner == owner]
