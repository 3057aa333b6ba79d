"""Selects and atomically claims the next eligible task."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from scholar_tasks.queue.models import LogLevel, TaskStatus, TaskView
from scholar_tasks.queue.repository import TaskStore, to_task_view
from scholar_tasks.queue.task_log import TaskLog

logger = logging.getLogger(__name__)


class Dispatcher:
    """Hands out PENDING tasks by priority, oldest first within a priority."""

    def __init__(
        self,
        *,
        store: TaskStore,
        task_log: TaskLog,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.task_log = task_log
        self.clock = clock or store.clock

    def claim_next(self, worker_id: str) -> TaskView | None:
        """Claim one eligible task for ``worker_id``; ``None`` when the queue is idle."""

        if not worker_id:
            raise ValueError("worker_id must be non-empty")
        now = self.clock()
        with self.store.session() as session:
            row = self.store.claim_next_eligible(session, worker_id=worker_id, now=now)
            if row is None:
                logger.debug("No eligible task for worker %s", worker_id)
                return None
            self.task_log.append(
                row.task_id,
                LogLevel.INFO,
                "Task claimed",
                {"worker_id": worker_id, "retry_count": row.retry_count},
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.RUNNING,
                session=session,
            )
            claimed = to_task_view(row)

        logger.info(
            "Worker %s claimed task %s (type=%s priority=%d)",
            worker_id,
            claimed.task_id,
            claimed.task_type.value,
            claimed.priority,
        )
        return claimed
