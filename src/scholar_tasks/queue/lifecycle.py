"""Task state machine: the only writer of status transitions.

```
PENDING --claim--> RUNNING --success--> COMPLETED
                      |
                      +----failure----> FAILED --(retry_count < max_retries)--> PENDING
```

PENDING -> RUNNING belongs to ``Dispatcher``. Every other transition goes through
``LifecycleManager`` as a guarded UPDATE and appends one ``task_logs`` row in
the same transaction. A failure that still has retries left is re-queued
before the transaction commits, so other readers never observe a retryable
FAILED task.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import ColumnElement
from sqlmodel import Session, col

from scholar_tasks.queue.errors import ConflictError, NotFoundError, ValidationError
from scholar_tasks.queue.models import LogLevel, TaskCreate, TaskOutcome, TaskStatus, TaskView
from scholar_tasks.queue.repository import TaskStore, check_task_id, dump_result, to_task_view
from scholar_tasks.queue.retry_policy import RetryPolicy
from scholar_tasks.queue.task_log import TaskLog
from scholar_tasks.storage.common import to_db_datetime
from scholar_tasks.storage.sqlmodel_models import Task

logger = logging.getLogger(__name__)

STALE_RUNNING_ERROR = "Worker lease expired: task stayed RUNNING past the stale threshold."
DEFAULT_FAILURE_MESSAGE = "Task failed without an error message."


class LifecycleManager:
    """Creates tasks and applies reported outcomes."""

    def __init__(
        self,
        *,
        store: TaskStore,
        task_log: TaskLog,
        retry_policy: RetryPolicy,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.task_log = task_log
        self.retry_policy = retry_policy
        self.clock = clock or store.clock

    def create_task(self, payload: TaskCreate) -> TaskView:
        with self.store.session() as session:
            task = self.store.create(payload, session=session)
            self.task_log.append(
                task.task_id,
                LogLevel.INFO,
                "Task created",
                {
                    "task_type": task.task_type.value,
                    "priority": task.priority,
                    "max_retries": task.max_retries,
                    "scheduled_at": (
                        task.scheduled_at.isoformat() if task.scheduled_at is not None else None
                    ),
                },
                status_from=None,
                status_to=TaskStatus.PENDING,
                session=session,
            )
        logger.info(
            "Task created: task_id=%s type=%s priority=%d",
            task.task_id,
            task.task_type.value,
            task.priority,
        )
        return task

    def report_outcome(
        self,
        task_id: str,
        outcome: TaskOutcome,
        *,
        worker_id: str | None = None,
    ) -> TaskView:
        """Apply a worker's outcome to a RUNNING task.

        When ``worker_id`` is given the write also requires that worker to hold
        the claim, so a worker whose task was recovered and re-claimed cannot
        overwrite the new attempt.
        """

        check_task_id(task_id)
        guard: list[ColumnElement[bool]] = []
        if worker_id is not None:
            guard.append(col(Task.worker_id) == worker_id)

        now = self.clock()
        retried = False
        with self.store.session() as session:
            if outcome.succeeded:
                self._complete(
                    session,
                    task_id=task_id,
                    result=outcome.result,
                    now=now,
                    guard=guard,
                )
            else:
                retried = self._fail(
                    session,
                    task_id=task_id,
                    error_message=outcome.error_message or DEFAULT_FAILURE_MESSAGE,
                    now=now,
                    guard=guard,
                    action="report outcome for",
                )
            row = self.store.load(session, task_id)
            if row is None:  # pragma: no cover - row was just updated in this transaction
                raise NotFoundError(task_id)
            task = to_task_view(row)

        if outcome.succeeded:
            logger.info("Task %s completed", task_id)
        elif retried:
            logger.warning(
                "Task %s failed, retry %d/%d scheduled at %s: %s",
                task_id,
                task.retry_count,
                task.max_retries,
                task.scheduled_at.isoformat() if task.scheduled_at is not None else "-",
                outcome.error_message,
            )
        else:
            logger.warning("Task %s failed terminally: %s", task_id, outcome.error_message)
        return task

    def recover_stale_running(self, *, stale_after: timedelta) -> list[TaskView]:
        """Fail RUNNING tasks whose claim is older than ``stale_after``.

        Recovered tasks follow the normal retry rule. Tasks that finish or are
        re-claimed while the sweep runs are left alone.
        """

        if stale_after.total_seconds() <= 0:
            raise ValueError("stale_after must be > 0")
        now = self.clock()
        cutoff = now - stale_after
        recovered: list[TaskView] = []
        for task_id in self.store.list_stale_running(started_before=cutoff):
            try:
                with self.store.session() as session:
                    self._fail(
                        session,
                        task_id=task_id,
                        error_message=STALE_RUNNING_ERROR,
                        now=now,
                        guard=[col(Task.started_at) < to_db_datetime(cutoff)],
                        action="recover",
                        metadata={
                            "reason": "stale_running",
                            "stale_after_seconds": int(stale_after.total_seconds()),
                        },
                    )
                    row = self.store.load(session, task_id)
                    task = to_task_view(row) if row is not None else None
            except (ConflictError, NotFoundError) as error:
                logger.debug("Skipped stale task %s: %s", task_id, error)
                continue
            if task is not None:
                logger.warning(
                    "Recovered stale running task %s -> %s",
                    task_id,
                    task.status.value,
                )
                recovered.append(task)
        return recovered

    def delete_task(self, task_id: str) -> None:
        self.store.delete(task_id)
        logger.info("Task deleted: task_id=%s", task_id)

    def _complete(
        self,
        session: Session,
        *,
        task_id: str,
        result: dict[str, Any] | None,
        now: datetime,
        guard: Sequence[ColumnElement[bool]],
    ) -> None:
        if result is not None and not isinstance(result, dict):
            raise ValidationError("result must be a JSON object", field="result")
        try:
            result_json = dump_result(result)
        except (TypeError, ValueError) as error:
            raise ValidationError(
                f"result must be JSON-serializable: {error}",
                field="result",
            ) from error

        changed = self.store.transition(
            session,
            task_id=task_id,
            expected=TaskStatus.RUNNING,
            values={
                "status": TaskStatus.COMPLETED,
                "result_json": result_json,
                "error_message": None,
                "completed_at": now,
                "updated_at": now,
            },
            extra_conditions=guard,
        )
        if not changed:
            self._raise_rejected(session, task_id=task_id, action="complete")
        self.task_log.append(
            task_id,
            LogLevel.INFO,
            "Task completed",
            {"result_keys": sorted(result)} if result else None,
            status_from=TaskStatus.RUNNING,
            status_to=TaskStatus.COMPLETED,
            session=session,
        )

    def _fail(  # noqa: PLR0913
        self,
        session: Session,
        *,
        task_id: str,
        error_message: str,
        now: datetime,
        guard: Sequence[ColumnElement[bool]],
        action: str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """RUNNING -> FAILED, then FAILED -> PENDING when retries remain.

        Returns True when the task was re-queued.
        """

        changed = self.store.transition(
            session,
            task_id=task_id,
            expected=TaskStatus.RUNNING,
            values={
                "status": TaskStatus.FAILED,
                "error_message": error_message,
                "result_json": None,
                "completed_at": now,
                "updated_at": now,
            },
            extra_conditions=guard,
        )
        if not changed:
            self._raise_rejected(session, task_id=task_id, action=action)

        row = self.store.load(session, task_id)
        if row is None:  # pragma: no cover - row was just updated in this transaction
            raise NotFoundError(task_id)
        self.task_log.append(
            task_id,
            LogLevel.ERROR,
            error_message,
            {
                **(metadata or {}),
                "retry_count": row.retry_count,
                "max_retries": row.max_retries,
            },
            status_from=TaskStatus.RUNNING,
            status_to=TaskStatus.FAILED,
            session=session,
        )

        if not self.retry_policy.is_retryable(row.retry_count, row.max_retries):
            return False

        retry_count = row.retry_count + 1
        delay = self.retry_policy.backoff(retry_count)
        scheduled_at = now + delay
        requeued = self.store.transition(
            session,
            task_id=task_id,
            expected=TaskStatus.FAILED,
            values={
                "status": TaskStatus.PENDING,
                "retry_count": retry_count,
                "scheduled_at": scheduled_at,
                "started_at": None,
                "completed_at": None,
                "worker_id": None,
                "error_message": None,
                "updated_at": now,
            },
            extra_conditions=[col(Task.retry_count) == row.retry_count],
        )
        if not requeued:  # pragma: no cover - the FAILED row is held by this transaction
            return False
        self.task_log.append(
            task_id,
            LogLevel.WARN,
            "Retry scheduled",
            {
                "retry_count": retry_count,
                "max_retries": row.max_retries,
                "backoff_seconds": delay.total_seconds(),
                "scheduled_at": scheduled_at.isoformat(),
                "last_error": error_message,
            },
            status_from=TaskStatus.FAILED,
            status_to=TaskStatus.PENDING,
            session=session,
        )
        return True

    def _raise_rejected(self, session: Session, *, task_id: str, action: str) -> None:
        row = self.store.load(session, task_id)
        if row is None:
            raise NotFoundError(task_id)
        current = TaskStatus(row.status)
        if current == TaskStatus.RUNNING:
            raise ConflictError(
                task_id=task_id,
                current=current,
                expected=TaskStatus.RUNNING,
                action=action,
                reason=f"claim is held by worker {row.worker_id or '-'}",
            )
        raise ConflictError(
            task_id=task_id,
            current=current,
            expected=TaskStatus.RUNNING,
            action=action,
        )
