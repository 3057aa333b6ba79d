"""Append-only audit trail of task lifecycle events."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlmodel import Session, col, select

from scholar_tasks.queue.errors import NotFoundError
from scholar_tasks.queue.models import LogLevel, TaskLogView, TaskStatus
from scholar_tasks.queue.repository import TaskStore
from scholar_tasks.storage.common import to_db_datetime, to_utc_aware_datetime
from scholar_tasks.storage.sqlmodel_models import TaskLogEntry


class TaskLog:
    """Writes and reads ``task_logs`` rows. Rows are never updated."""

    def __init__(
        self,
        store: TaskStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or store.clock

    def append(  # noqa: PLR0913
        self,
        task_id: str,
        level: LogLevel,
        message: str,
        metadata: dict[str, Any] | None = None,
        *,
        status_from: TaskStatus | None = None,
        status_to: TaskStatus | None = None,
        session: Session | None = None,
    ) -> None:
        """Insert one log row, inside ``session`` when the caller holds one."""

        with self.store.scope(session) as active:
            active.add(
                TaskLogEntry(
                    task_id=task_id,
                    level=LogLevel(level).value,
                    message=message,
                    status_from=status_from.value if status_from is not None else None,
                    status_to=status_to.value if status_to is not None else None,
                    metadata_json=json.dumps(metadata, ensure_ascii=False, sort_keys=True)
                    if metadata
                    else None,
                    created_at=to_db_datetime(self.clock()),
                ),
            )

    def list_by_task(self, task_id: str) -> list[TaskLogView]:
        """Entries for one task, oldest first."""

        with self.store.session() as session:
            if not self.store.exists(task_id, session=session):
                raise NotFoundError(task_id)
            rows = session.exec(
                select(TaskLogEntry)
                .where(TaskLogEntry.task_id == task_id)
                .order_by(col(TaskLogEntry.created_at).asc(), col(TaskLogEntry.id).asc()),
            ).all()
        return [_to_log_view(row) for row in rows]


def _to_log_view(row: TaskLogEntry) -> TaskLogView:
    metadata: dict[str, Any] = {}
    if row.metadata_json:
        parsed = json.loads(row.metadata_json)
        if isinstance(parsed, dict):
            metadata = parsed
    return TaskLogView(
        log_id=row.id or 0,
        task_id=row.task_id,
        level=LogLevel(row.level),
        message=row.message,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        metadata=metadata,
    )
