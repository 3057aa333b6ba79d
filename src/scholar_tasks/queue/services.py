"""Use-case facade over the task queue core."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from scholar_tasks.queue.dispatcher import Dispatcher
from scholar_tasks.queue.lifecycle import LifecycleManager
from scholar_tasks.queue.models import (
    PageRequest,
    QueueStats,
    TaskCreate,
    TaskFilters,
    TaskLogView,
    TaskOutcome,
    TaskPage,
    TaskType,
    TaskView,
)
from scholar_tasks.queue.repository import TaskStore
from scholar_tasks.queue.retry_policy import RetryPolicy
from scholar_tasks.queue.task_log import TaskLog


class TaskQueueService:
    """Entry point for API handlers and worker processes.

    Wires store, log, retry policy, lifecycle manager and dispatcher around
    one explicitly passed ``TaskStore``.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        retry_policy: RetryPolicy | None = None,
        stale_running_after: timedelta | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or store.clock
        self.task_log = TaskLog(store, clock=self.clock)
        self.retry_policy = retry_policy or RetryPolicy()
        self.stale_running_after = stale_running_after
        self.lifecycle = LifecycleManager(
            store=store,
            task_log=self.task_log,
            retry_policy=self.retry_policy,
            clock=self.clock,
        )
        self.dispatcher = Dispatcher(store=store, task_log=self.task_log, clock=self.clock)

    def create_task(
        self,
        task_type: TaskType | str,
        payload: Any,
        *,
        priority: int | None = None,
        max_retries: int | None = None,
        scheduled_at: datetime | None = None,
    ) -> TaskView:
        return self.lifecycle.create_task(
            TaskCreate(
                task_type=task_type,
                payload=payload,
                priority=priority,
                max_retries=max_retries,
                scheduled_at=scheduled_at,
            ),
        )

    def get_task(self, task_id: str) -> TaskView:
        return self.store.get(task_id)

    def list_tasks(
        self,
        filters: TaskFilters | None = None,
        page: PageRequest | None = None,
    ) -> TaskPage:
        return self.store.list_tasks(filters, page)

    def delete_task(self, task_id: str) -> None:
        self.lifecycle.delete_task(task_id)

    def claim_next(self, worker_id: str) -> TaskView | None:
        return self.dispatcher.claim_next(worker_id)

    def report_outcome(
        self,
        task_id: str,
        outcome: TaskOutcome,
        *,
        worker_id: str | None = None,
    ) -> TaskView:
        return self.lifecycle.report_outcome(task_id, outcome, worker_id=worker_id)

    def list_logs(self, task_id: str) -> list[TaskLogView]:
        return self.task_log.list_by_task(task_id)

    def recover_stale_running(self, stale_after: timedelta | None = None) -> list[TaskView]:
        """Run the stale-RUNNING sweep; a no-op when no threshold is configured."""

        threshold = stale_after if stale_after is not None else self.stale_running_after
        if threshold is None or threshold.total_seconds() <= 0:
            return []
        return self.lifecycle.recover_stale_running(stale_after=threshold)

    def stats(self) -> QueueStats:
        return QueueStats(counts=self.store.count_by_status())
