"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from dropcron.jobs.store import JobStore
from dropcron.options import OptionsStore
from dropcron.scheduler.models import Schedule, SchedulerContext
from dropcron.scheduler.registry import SchedulerRegistry


class FakeHandle:
    """Trigger registration recorded by FakeTriggers."""

    def __init__(self, schedule: Schedule, on_fire, name: str) -> None:
        self.schedule = schedule
        self.on_fire = on_fire
        self.name = name
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeTriggers:
    """Trigger engine that only fires when a test asks it to."""

    def __init__(self) -> None:
        self.handles: list[FakeHandle] = []

    def register(self, schedule: Schedule, on_fire, *, name: str = "") -> FakeHandle:
        handle = FakeHandle(schedule, on_fire, name)
        self.handles.append(handle)
        return handle

    @property
    def live(self) -> list[FakeHandle]:
        return [h for h in self.handles if not h.stopped]

    async def fire(self, name: str) -> int:
        """Fire every live registration for *name*. Returns how many fired."""
        fired = 0
        for handle in self.live:
            if handle.name == name:
                await handle.on_fire()
                fired += 1
        return fired


@pytest.fixture(autouse=True)
def _reset_singletons():
    OptionsStore._reset()
    JobStore._reset()
    yield
    OptionsStore._reset()
    JobStore._reset()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def store(db_path: Path) -> OptionsStore:
    """OptionsStore backed by a temp database."""
    return OptionsStore(db_path=db_path)


@pytest.fixture
def jobs(db_path: Path) -> JobStore:
    """JobStore sharing the temp database with ``store``."""
    return JobStore(db_path=db_path)


@pytest.fixture
def triggers() -> FakeTriggers:
    return FakeTriggers()


@pytest.fixture
def context(store: OptionsStore, jobs: JobStore, triggers: FakeTriggers) -> SchedulerContext:
    return SchedulerContext(
        store=store,
        triggers=triggers,
        jobs=jobs,
        lock_ttl_ms=60_000,
        holder_id="test-host-1",
    )


@pytest.fixture
def registry(context: SchedulerContext) -> SchedulerRegistry:
    """Executor registry wired to the temp stores and fake triggers."""
    return SchedulerRegistry(context, is_executor=True)
