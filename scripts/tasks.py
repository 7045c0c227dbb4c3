#!/usr/bin/env python3
"""Inspect scheduler state in the shared database from any worker host.

Usage examples:
    # Task metadata written by the executor worker
    python scripts/tasks.py tasks

    # Lock records, with age and whether they are still held
    python scripts/tasks.py locks

    # Recent scheduled-task jobs, failures only
    python scripts/tasks.py jobs --status failed --limit 20
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dropcron.config import settings
from dropcron.jobs.store import JobStore
from dropcron.options import OptionsStore
from dropcron.scheduler.locks import now_ms
from dropcron.scheduler.models import LOCK_KEY_PREFIX, TASK_KEY_PREFIX, LockRecord, TaskMetadata


async def show_tasks(store: OptionsStore) -> None:
    records = await store.list_prefix(TASK_KEY_PREFIX)
    if not records:
        print("No task metadata recorded.")
        return
    for value in records.values():
        meta = TaskMetadata.from_value(value)
        overlap = "no-overlap" if meta.without_overlapping else "overlap"
        print(f"{meta.name:<40} {meta.schedule or '-':<16} {meta.owner or 'core':<24} {overlap}")


async def show_locks(store: OptionsStore) -> None:
    records = await store.list_prefix(LOCK_KEY_PREFIX)
    if not records:
        print("No locks held.")
        return
    now = now_ms()
    for key, value in records.items():
        lock = LockRecord.from_value(value)
        state = "held" if lock.is_held(now, settings.scheduler_lock_ttl_ms) else "stale"
        name = key.removeprefix(LOCK_KEY_PREFIX)
        print(f"{name:<40} {lock.holder:<32} {lock.age_ms(now) / 1000:>8.1f}s {state}")


async def show_jobs(jobs: JobStore, status: str | None, limit: int) -> None:
    entries = await jobs.list_jobs(status=status, limit=limit)
    if not entries:
        print("No jobs found.")
        return
    for job in entries:
        line = f"{job.created_at}  {job.status:<10} {job.progress:>3}%  {job.title}"
        if job.error:
            line += f"  ({job.error})"
        print(line)


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect dropcron scheduler state")
    parser.add_argument("--db", type=Path, help="Database path (default from settings)")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("tasks", help="List registered task metadata")
    sub.add_parser("locks", help="List task lock records")
    jobs_parser = sub.add_parser("jobs", help="List recent jobs")
    jobs_parser.add_argument("--status", help="Filter by status (e.g. failed)")
    jobs_parser.add_argument("--limit", type=int, default=20, help="Max jobs (default: 20)")
    args = parser.parse_args()

    db_path = args.db or settings.database_path
    if not db_path.exists():
        print(f"ERROR: database not found at {db_path}", file=sys.stderr)
        sys.exit(1)

    if args.command == "tasks":
        asyncio.run(show_tasks(OptionsStore(db_path=db_path)))
    elif args.command == "locks":
        asyncio.run(show_locks(OptionsStore(db_path=db_path)))
    else:
        asyncio.run(show_jobs(JobStore(db_path=db_path), args.status, args.limit))


if __name__ == "__main__":
    main()
