from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from scholar_tasks.queue.models import LogLevel, TaskStatus, TaskType
from scholar_tasks.queue.repository import TaskStore
from scholar_tasks.queue.services import TaskQueueService

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Dispatch"),
]


def _index_task(service: TaskQueueService, page_id: str, **kwargs):
    return service.create_task(TaskType.INDEX_PAGE, {"page_id": page_id}, **kwargs)


def test_claim_returns_none_on_empty_queue(service: TaskQueueService) -> None:
    assert service.claim_next("worker-a") is None


def test_claim_rejects_empty_worker_id(service: TaskQueueService) -> None:
    with pytest.raises(ValueError, match="worker_id"):
        service.claim_next("")


def test_claim_prefers_higher_priority(service: TaskQueueService) -> None:
    low = _index_task(service, "low", priority=2)
    high = _index_task(service, "high", priority=9)
    mid = _index_task(service, "mid", priority=5)

    order = [service.claim_next("worker-a") for _ in range(3)]

    assert [task.task_id for task in order] == [high.task_id, mid.task_id, low.task_id]
    assert service.claim_next("worker-a") is None


def test_claim_is_fifo_within_priority(service: TaskQueueService, clock) -> None:
    first = _index_task(service, "first")
    clock.advance(seconds=1)
    second = _index_task(service, "second")

    assert service.claim_next("worker-a").task_id == first.task_id
    assert service.claim_next("worker-a").task_id == second.task_id


def test_claim_breaks_identical_timestamps_by_insertion_order(
    service: TaskQueueService,
) -> None:
    created = [_index_task(service, f"p{index}") for index in range(4)]

    claimed = [service.claim_next("worker-a").task_id for _ in range(4)]

    assert claimed == [task.task_id for task in created]


def test_claim_skips_tasks_scheduled_in_future(service: TaskQueueService, clock) -> None:
    later = _index_task(service, "later", priority=10, scheduled_at=clock() + timedelta(minutes=5))
    now = _index_task(service, "now", priority=1)

    assert service.claim_next("worker-a").task_id == now.task_id
    assert service.claim_next("worker-a") is None

    clock.advance(minutes=5)
    assert service.claim_next("worker-a").task_id == later.task_id


def test_claim_marks_task_running_and_logs(service: TaskQueueService, clock) -> None:
    task = _index_task(service, "p1")
    clock.advance(seconds=10)

    claimed = service.claim_next("worker-a")

    assert claimed is not None
    assert claimed.status == TaskStatus.RUNNING
    assert claimed.worker_id == "worker-a"
    assert claimed.started_at == clock()
    assert claimed.completed_at is None
    assert service.get_task(task.task_id) == claimed

    logs = service.list_logs(task.task_id)
    assert [(entry.status_from, entry.status_to) for entry in logs] == [
        (None, TaskStatus.PENDING),
        (TaskStatus.PENDING, TaskStatus.RUNNING),
    ]
    assert logs[-1].level == LogLevel.INFO
    assert logs[-1].metadata == {"retry_count": 0, "worker_id": "worker-a"}


def test_running_tasks_are_not_claimed_again(service: TaskQueueService) -> None:
    _index_task(service, "p1")

    assert service.claim_next("worker-a") is not None
    assert service.claim_next("worker-b") is None


def test_concurrent_workers_never_share_a_task(tmp_path: Path, clock) -> None:
    db_path = tmp_path / "concurrent.db"
    setup_store = TaskStore(db_path, clock=clock)
    setup_store.init_schema()
    setup_service = TaskQueueService(store=setup_store)
    created = {_index_task(setup_service, f"p{index}").task_id for index in range(24)}
    setup_store.close()

    start = threading.Event()
    claimed: list[str] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def _drain(worker_id: str) -> None:
        store = TaskStore(db_path, clock=clock, sqlite_busy_timeout_ms=10_000)
        service = TaskQueueService(store=store)
        try:
            start.wait(timeout=5)
            while True:
                task = service.claim_next(worker_id)
                if task is None:
                    return
                with lock:
                    claimed.append(task.task_id)
        except BaseException as error:  # noqa: BLE001
            with lock:
                errors.append(error)
        finally:
            store.close()

    threads = [
        threading.Thread(target=_drain, args=(f"worker-{index}",)) for index in range(6)
    ]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(claimed) == len(created)
    assert set(claimed) == created

    verify_store = TaskStore(db_path, clock=clock)
    counts = verify_store.count_by_status()
    verify_store.close()
    assert counts[TaskStatus.RUNNING] == 24
    assert counts[TaskStatus.PENDING] == 0
