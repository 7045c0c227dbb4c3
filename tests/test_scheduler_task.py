"""Tests for ScheduledTask — fluent schedules, triggers, and the locked execute protocol."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from dropcron.jobs.store import JobStore
from dropcron.options import OptionsStore
from dropcron.scheduler.locks import lock_key, now_ms
from dropcron.scheduler.models import SchedulerContext, TaskState
from dropcron.scheduler.task import ScheduledTask, SchedulerConfigError


def _make_task(context: SchedulerContext, callback=None, name: str = "backup", **kwargs):
    return ScheduledTask(callback or AsyncMock(), context, name=name, **kwargs)


# -- Fluent schedules ----------------------------------------------------------


@pytest.mark.parametrize(
    ("method", "expected"),
    [
        ("every_minute", "* * * * *"),
        ("every_two_minutes", "*/2 * * * *"),
        ("every_five_minutes", "*/5 * * * *"),
        ("every_ten_minutes", "*/10 * * * *"),
        ("every_fifteen_minutes", "*/15 * * * *"),
        ("every_thirty_minutes", "*/30 * * * *"),
        ("hourly", "0 * * * *"),
        ("daily", "0 0 * * *"),
        ("weekly", "0 0 * * 0"),
        ("monthly", "0 0 1 * *"),
    ],
)
def test_preset_schedules(context: SchedulerContext, method: str, expected: str) -> None:
    task = _make_task(context)
    assert getattr(task, method)() is task
    assert task.cron_expression == expected
    assert task.schedule.preset is not None


def test_daily_at(context: SchedulerContext) -> None:
    task = _make_task(context).daily_at("02:00")
    assert task.cron_expression == "0 2 * * *"
    assert task.schedule.preset == "daily_at"


def test_daily_at_with_minutes(context: SchedulerContext) -> None:
    assert _make_task(context).daily_at("14:30").cron_expression == "30 14 * * *"


def test_daily_at_hour_only(context: SchedulerContext) -> None:
    assert _make_task(context).daily_at("7").cron_expression == "0 7 * * *"


def test_hourly_at(context: SchedulerContext) -> None:
    assert _make_task(context).hourly_at(15).cron_expression == "15 * * * *"


def test_every_n_minutes(context: SchedulerContext) -> None:
    assert _make_task(context).every_n_minutes(7).cron_expression == "*/7 * * * *"


def test_raw_cron(context: SchedulerContext) -> None:
    task = _make_task(context).cron("0 0 * * 1-5")
    assert task.cron_expression == "0 0 * * 1-5"
    assert task.schedule.is_raw is True


def test_last_schedule_wins(context: SchedulerContext) -> None:
    task = _make_task(context).hourly().daily_at("03:15")
    assert task.cron_expression == "15 3 * * *"


def test_allow_overlapping_and_named(context: SchedulerContext) -> None:
    task = _make_task(context)
    assert task.without_overlapping is True

    task.allow_overlapping().named("renamed")
    assert task.without_overlapping is False
    assert task.name == "renamed"


# -- Identity ------------------------------------------------------------------


def test_generated_names_are_unique(context: SchedulerContext) -> None:
    a = ScheduledTask(AsyncMock(), context)
    b = ScheduledTask(AsyncMock(), context)
    assert a.name.startswith("task_")
    assert a.name != b.name


def test_owner_is_immutable(context: SchedulerContext) -> None:
    task = _make_task(context, owner="my-plugin")
    with pytest.raises(AttributeError):
        task.owner = "other-plugin"  # type: ignore[misc]
    assert task.owner == "my-plugin"


def test_info_projection(context: SchedulerContext) -> None:
    task = _make_task(context, owner="seo").hourly()
    info = task.info()
    assert (info.name, info.owner, info.schedule, info.without_overlapping) == (
        "backup",
        "seo",
        "0 * * * *",
        True,
    )


# -- start / stop --------------------------------------------------------------


def test_start_without_schedule_raises(context: SchedulerContext) -> None:
    task = _make_task(context, name="unscheduled")
    with pytest.raises(SchedulerConfigError, match="No schedule defined for task: unscheduled"):
        task.start()
    assert task.state is TaskState.CONSTRUCTED


def test_config_error_is_value_error() -> None:
    assert issubclass(SchedulerConfigError, ValueError)


def test_start_registers_trigger(context: SchedulerContext, triggers) -> None:
    task = _make_task(context).every_minute()
    task.start()

    assert task.state is TaskState.SCHEDULED
    assert len(triggers.handles) == 1
    handle = triggers.handles[0]
    assert handle.schedule.expression == "* * * * *"
    assert handle.name == "backup"


def test_double_start_registers_two_triggers(
    context: SchedulerContext, triggers
) -> None:
    task = _make_task(context).every_minute()
    task.start()
    task.start()
    assert len(triggers.live) == 2

    task.stop()
    assert triggers.live == []


def test_stop_never_started_is_noop(context: SchedulerContext) -> None:
    task = _make_task(context).every_minute()
    task.stop()
    assert task.state is TaskState.CONSTRUCTED


async def test_stop_prevents_future_firings(
    context: SchedulerContext, triggers
) -> None:
    callback = AsyncMock()
    task = _make_task(context, callback).every_minute()
    task.start()
    task.stop()

    assert await triggers.fire("backup") == 0
    callback.assert_not_called()
    assert task.state is TaskState.STOPPED


async def test_firing_runs_execute(context: SchedulerContext, triggers) -> None:
    callback = AsyncMock()
    task = _make_task(context, callback).every_minute()
    task.start()

    await triggers.fire("backup")

    callback.assert_awaited_once()
    assert task.state is TaskState.SCHEDULED


# -- execute -------------------------------------------------------------------


async def test_execute_runs_callback_and_releases_lock(
    context: SchedulerContext, store: OptionsStore
) -> None:
    callback = AsyncMock()
    task = _make_task(context, callback)

    await task.execute()

    callback.assert_awaited_once()
    assert await store.get(lock_key("backup")) is None


async def test_execute_holds_lock_while_running(
    context: SchedulerContext, store: OptionsStore
) -> None:
    seen: list = []

    async def body() -> None:
        seen.append(await store.get(lock_key("backup")))

    await _make_task(context, body).execute()

    assert seen[0]["holder"] == "test-host-1"
    assert seen[0]["acquired_at"] <= now_ms()


async def test_execute_accepts_sync_callback(context: SchedulerContext) -> None:
    callback = MagicMock(return_value=None)

    await _make_task(context, callback).execute()

    callback.assert_called_once_with()


async def test_execute_records_completed_job(context: SchedulerContext, jobs: JobStore) -> None:
    await _make_task(context).execute()

    [job] = await jobs.list_jobs()
    assert job.job_id.startswith("scheduled_backup_")
    assert job.title == "Scheduled: backup"
    assert job.type == "scheduled_task"
    assert job.status == "completed"
    assert job.progress == 100
    assert job.completed_at is not None
    assert job.metadata == {"task_name": "backup"}


async def test_execute_failure_is_isolated(
    context: SchedulerContext, jobs: JobStore, store: OptionsStore
) -> None:
    async def boom() -> None:
        raise RuntimeError("boom")

    task = _make_task(context, boom)
    await task.execute()  # must not raise

    [job] = await jobs.list_jobs()
    assert job.status == "failed"
    assert job.error == "boom"
    assert await store.get(lock_key("backup")) is None
    assert task.state is TaskState.CONSTRUCTED


async def test_execute_failure_is_logged(context: SchedulerContext, caplog) -> None:
    async def boom() -> None:
        raise RuntimeError("boom")

    await _make_task(context, boom, name="flaky").execute()

    assert any(
        "Error executing task flaky" in r.getMessage() and r.exc_info for r in caplog.records
    )


async def test_execute_skips_when_lock_held(
    context: SchedulerContext, store: OptionsStore, jobs: JobStore, caplog
) -> None:
    caplog.set_level("INFO")
    await store.set(lock_key("backup"), {"acquired_at": now_ms(), "holder": "web-2"})
    callback = AsyncMock()

    await _make_task(context, callback).execute()

    callback.assert_not_called()
    assert await jobs.list_jobs() == []
    # Another holder's lock is left alone.
    assert (await store.get(lock_key("backup")))["holder"] == "web-2"
    assert any("already running, skipping" in r.getMessage() for r in caplog.records)


async def test_execute_overrides_stale_lock(context: SchedulerContext, store: OptionsStore) -> None:
    await store.set(lock_key("backup"), {"acquired_at": now_ms() - 61_000, "holder": "crashed"})
    callback = AsyncMock()

    await _make_task(context, callback).execute()

    callback.assert_awaited_once()
    assert await store.get(lock_key("backup")) is None


async def test_execute_allow_overlapping_ignores_lock(
    context: SchedulerContext, store: OptionsStore
) -> None:
    await store.set(lock_key("backup"), {"acquired_at": now_ms(), "holder": "web-2"})
    callback = AsyncMock()

    await _make_task(context, callback).allow_overlapping().execute()

    callback.assert_awaited_once()


async def test_second_firing_within_ttl_is_dropped(context: SchedulerContext) -> None:
    started = asyncio.Event()
    release = asyncio.Event()
    calls = 0

    async def slow() -> None:
        nonlocal calls
        calls += 1
        started.set()
        await release.wait()

    task = _make_task(context, slow)
    first = asyncio.create_task(task.execute())
    await started.wait()
    assert task.state is TaskState.EXECUTING

    await task.execute()
    assert calls == 1

    release.set()
    await first
    assert calls == 1


async def test_overlapping_firings_run_concurrently_when_allowed(
    context: SchedulerContext,
) -> None:
    started = asyncio.Event()
    release = asyncio.Event()
    calls = 0

    async def slow() -> None:
        nonlocal calls
        calls += 1
        started.set()
        await release.wait()

    task = _make_task(context, slow).allow_overlapping()
    first = asyncio.create_task(task.execute())
    await started.wait()

    second = asyncio.create_task(task.execute())
    while calls < 2:
        await asyncio.sleep(0.01)

    release.set()
    await asyncio.gather(first, second)
    assert calls == 2


async def test_lock_read_failure_drops_firing(triggers) -> None:
    store = MagicMock()
    store.get = AsyncMock(side_effect=RuntimeError("db down"))
    store.set = AsyncMock()
    store.delete = AsyncMock()
    context = SchedulerContext(store=store, triggers=triggers, holder_id="h")
    callback = AsyncMock()

    await _make_task(context, callback).execute()

    callback.assert_not_called()
    store.set.assert_not_called()
    store.delete.assert_not_called()


async def test_failed_lock_write_leaves_existing_record(triggers) -> None:
    store = MagicMock()
    store.get = AsyncMock(return_value=None)
    store.set = AsyncMock(side_effect=RuntimeError("db down"))
    store.delete = AsyncMock()
    context = SchedulerContext(store=store, triggers=triggers, holder_id="h")
    callback = AsyncMock()

    await _make_task(context, callback).execute()

    callback.assert_not_called()
    store.delete.assert_not_called()


async def test_lock_release_failure_is_not_raised(triggers, caplog) -> None:
    store = MagicMock()
    store.get = AsyncMock(return_value=None)
    store.set = AsyncMock()
    store.delete = AsyncMock(side_effect=RuntimeError("db down"))
    context = SchedulerContext(store=store, triggers=triggers, holder_id="h")
    callback = AsyncMock()

    await _make_task(context, callback).execute()

    callback.assert_awaited_once()
    assert any("Failed to release lock for backup" in r.getMessage() for r in caplog.records)


async def test_execute_without_job_observer(triggers, store: OptionsStore) -> None:
    context = SchedulerContext(store=store, triggers=triggers, jobs=None, holder_id="h")
    callback = AsyncMock()

    await _make_task(context, callback).execute()

    callback.assert_awaited_once()


async def test_job_observer_failure_does_not_block_callback(
    triggers, store: OptionsStore
) -> None:
    observer = MagicMock()
    observer.create = AsyncMock(side_effect=RuntimeError("observer down"))
    observer.update = AsyncMock()
    context = SchedulerContext(store=store, triggers=triggers, jobs=observer, holder_id="h")
    callback = AsyncMock()

    await _make_task(context, callback).execute()

    callback.assert_awaited_once()
    observer.update.assert_not_called()
    assert await store.get(lock_key("backup")) is None


async def test_failed_job_patch_shape(triggers, store: OptionsStore) -> None:
    observer = MagicMock()
    observer.create = AsyncMock()
    observer.update = AsyncMock(return_value=True)
    context = SchedulerContext(store=store, triggers=triggers, jobs=observer, holder_id="h")

    async def boom() -> None:
        raise ValueError("boom")

    await _make_task(context, boom).execute()

    descriptor = observer.create.call_args[0][0]
    assert descriptor["status"] == "processing"
    assert descriptor["title"] == "Scheduled: backup"
    job_id, patch = observer.update.call_args[0]
    assert job_id == descriptor["id"]
    assert patch["status"] == "failed"
    assert patch["error"] == "boom"
