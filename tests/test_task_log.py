from __future__ import annotations

from uuid import uuid4

import allure
import pytest
from sqlalchemy.exc import IntegrityError

from scholar_tasks.queue.errors import NotFoundError, ValidationError
from scholar_tasks.queue.models import LogLevel, TaskCreate, TaskStatus
from scholar_tasks.queue.repository import TaskStore
from scholar_tasks.queue.task_log import TaskLog

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Audit Log"),
]


def test_entries_come_back_oldest_first(store: TaskStore, clock) -> None:
    task = store.create(TaskCreate(task_type="CRAWL", payload={"url": "https://example.com"}))
    task_log = TaskLog(store)

    task_log.append(task.task_id, LogLevel.INFO, "first")
    task_log.append(task.task_id, LogLevel.WARN, "same instant")
    clock.advance(seconds=3)
    task_log.append(
        task.task_id,
        LogLevel.ERROR,
        "third",
        {"attempt": 1},
        status_from=TaskStatus.RUNNING,
        status_to=TaskStatus.FAILED,
    )

    entries = task_log.list_by_task(task.task_id)

    assert [entry.message for entry in entries] == ["first", "same instant", "third"]
    assert entries[0].metadata == {}
    assert entries[0].status_from is None
    assert entries[2].level == LogLevel.ERROR
    assert entries[2].metadata == {"attempt": 1}
    assert (entries[2].status_from, entries[2].status_to) == (
        TaskStatus.RUNNING,
        TaskStatus.FAILED,
    )
    assert entries[2].created_at == clock()
    assert entries[0].log_id < entries[1].log_id < entries[2].log_id


def test_logs_of_unknown_task_raise_not_found(store: TaskStore) -> None:
    with pytest.raises(NotFoundError):
        TaskLog(store).list_by_task(str(uuid4()))


def test_logs_of_malformed_task_id_raise_validation_error(store: TaskStore) -> None:
    with pytest.raises(ValidationError):
        TaskLog(store).list_by_task("abc")


def test_append_requires_existing_task(store: TaskStore) -> None:
    with pytest.raises(IntegrityError):
        TaskLog(store).append(str(uuid4()), LogLevel.INFO, "orphan")
