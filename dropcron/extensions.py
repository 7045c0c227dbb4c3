"""Extension lifecycle — activates plugins/themes and scopes their scheduled tasks.

An extension is any importable module exposing an ``init(scheduler)``
function (sync or async) and, optionally, a ``SLUG`` string::

    SLUG = "backup-plugin"

    async def init(scheduler):
        scheduler.call(run_backup, "nightly_backup").daily_at("02:00")

``scheduler`` is an :class:`~dropcron.scheduler.registry.OwnerScope`, so every
task the extension registers is owned by its slug and removed when the
extension is deactivated.
"""

from __future__ import annotations

import importlib
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dropcron.scheduler.registry import OwnerScope, SchedulerRegistry

logger = logging.getLogger(__name__)

ExtensionInit = Callable[["OwnerScope"], Any]

EXTENSION_KINDS = ("plugin", "theme")


class ExtensionError(Exception):
    """An extension could not be loaded or initialised."""


@dataclass(frozen=True)
class Extension:
    """A plugin or theme known to the lifecycle manager.

    Attributes:
        slug: Unique identifier; becomes the owner of its scheduled tasks.
        init: Called once on activation with an owner-scoped scheduler.
        kind: ``"plugin"`` or ``"theme"``.
    """

    slug: str
    init: ExtensionInit
    kind: str = "plugin"

    def __post_init__(self) -> None:
        if not self.slug:
            msg = "Extension slug must not be empty"
            raise ValueError(msg)
        if self.kind not in EXTENSION_KINDS:
            msg = f"Unknown extension kind: {self.kind}"
            raise ValueError(msg)


class ExtensionManager:
    """Activates and deactivates extensions against a scheduler registry."""

    def __init__(self, registry: SchedulerRegistry) -> None:
        self._registry = registry
        self._active: dict[str, Extension] = {}

    @property
    def active(self) -> list[str]:
        """Slugs of all active extensions, in activation order."""
        return list(self._active)

    def load(self, module_path: str, kind: str = "plugin") -> Extension:
        """Import *module_path* and wrap it as an Extension."""
        try:
            module = importlib.import_module(module_path)
        except ImportError as exc:
            msg = f"Cannot import {kind} module {module_path}: {exc}"
            raise ExtensionError(msg) from exc

        init = getattr(module, "init", None)
        if not callable(init):
            msg = f"{kind.capitalize()} module {module_path} has no init() function"
            raise ExtensionError(msg)

        slug = getattr(module, "SLUG", None) or module_path.rsplit(".", 1)[-1]
        return Extension(slug=slug, init=init, kind=kind)

    async def activate(self, extension: Extension) -> None:
        """Run the extension's ``init`` with its tasks owned by its slug.

        On failure, tasks the extension registered before raising are torn
        down and an ExtensionError is raised.
        """
        if extension.slug in self._active:
            logger.info("%s %s is already active", extension.kind.capitalize(), extension.slug)
            return

        try:
            with self._registry.owned_by(extension.slug) as scope:
                result = extension.init(scope)
                if inspect.isawaitable(result):
                    await result
        except Exception as exc:
            logger.exception("Failed to initialise %s %s", extension.kind, extension.slug)
            await self._registry.teardown_tasks_by_owner(extension.slug)
            msg = f"Failed to initialise {extension.kind} {extension.slug}: {exc}"
            raise ExtensionError(msg) from exc

        self._active[extension.slug] = extension
        logger.info(
            "Activated %s %s (%d scheduled task(s))",
            extension.kind,
            extension.slug,
            len(self._registry.get_tasks_by_owner(extension.slug)),
        )

    async def deactivate(self, slug: str) -> int:
        """Tear down every task owned by *slug*. Returns the number removed."""
        extension = self._active.pop(slug, None)
        if extension is None:
            logger.info("Extension %s is not active", slug)
        removed = await self._registry.teardown_tasks_by_owner(slug)
        if extension is not None:
            logger.info("Deactivated %s %s", extension.kind, slug)
        return removed
