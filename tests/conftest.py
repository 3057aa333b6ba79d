"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from scholar_tasks.queue.repository import TaskStore
from scholar_tasks.queue.retry_policy import RetryPolicy
from scholar_tasks.queue.services import TaskQueueService

START = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(tmp_path: Path, clock: FakeClock) -> Iterator[TaskStore]:
    task_store = TaskStore(tmp_path / "tasks.db", clock=clock)
    task_store.init_schema()
    yield task_store
    task_store.close()


@pytest.fixture()
def service(store: TaskStore) -> TaskQueueService:
    return TaskQueueService(
        store=store,
        retry_policy=RetryPolicy(base_seconds=30, max_seconds=900),
        stale_running_after=timedelta(minutes=30),
    )


@pytest.fixture()
def scholar_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point CLI settings at a temp DB and zero the retry backoff."""

    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("SCHOLAR_TASKS_DB_PATH", str(db_path))
    monkeypatch.setenv("SCHOLAR_TASKS_RETRY_BASE_SECONDS", "0")
    monkeypatch.setenv("SCHOLAR_TASKS_RETRY_MAX_SECONDS", "0")
    monkeypatch.setenv("SCHOLAR_TASKS_WORKER_ID", "cli-worker")
    monkeypatch.setenv("SCHOLAR_TASKS_POLL_INTERVAL_SECONDS", "0")
    return db_path
