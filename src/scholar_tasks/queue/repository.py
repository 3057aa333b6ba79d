"""Durable task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import ColumnElement, func, literal_column, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from scholar_tasks.queue.errors import NotFoundError, ValidationError
from scholar_tasks.queue.models import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PRIORITY,
    MAX_PRIORITY,
    MIN_PRIORITY,
    PageRequest,
    SortOrder,
    TaskCreate,
    TaskFilters,
    TaskPage,
    TaskStatus,
    TaskType,
    TaskView,
)
from scholar_tasks.queue.payloads import validate_payload
from scholar_tasks.storage.alembic_runner import upgrade_head
from scholar_tasks.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from scholar_tasks.storage.sqlmodel_models import Task

DEFAULT_MAX_PAGE_SIZE = 100

SORTABLE_FIELDS: dict[str, Any] = {
    "created_at": Task.created_at,
    "updated_at": Task.updated_at,
    "priority": Task.priority,
    "scheduled_at": Task.scheduled_at,
    "status": Task.status,
    "task_type": Task.task_type,
}

# Tasks with an identical created_at keep insertion order.
_INSERTION_ORDER = literal_column("tasks.rowid")


class TaskStore:
    """Task persistence facade: CRUD, filtered queries and guarded writes.

    Holds no business rules. Status-changing writes are exposed only as
    compare-and-swap primitives consumed by ``LifecycleManager`` and ``Dispatcher``.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5000,
        clock: Callable[[], datetime] = utc_now,
        max_page_size: int = DEFAULT_MAX_PAGE_SIZE,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.max_page_size = max_page_size
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """One transaction; committed on clean exit, rolled back otherwise."""

        with Session(self.engine, expire_on_commit=False) as session:
            yield session
            session.commit()

    @contextmanager
    def scope(self, session: Session | None = None) -> Iterator[Session]:
        """Join the caller's transaction when given, else open a new one."""

        if session is not None:
            yield session
            return
        with self.session() as owned:
            yield owned

    def create(self, payload: TaskCreate, *, session: Session | None = None) -> TaskView:
        """Validate and insert a PENDING task."""

        task_type = _parse_task_type(payload.task_type)
        priority = DEFAULT_PRIORITY if payload.priority is None else payload.priority
        if not _is_int(priority) or not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValidationError(
                f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}",
                field="priority",
            )
        max_retries = DEFAULT_MAX_RETRIES if payload.max_retries is None else payload.max_retries
        if not _is_int(max_retries) or max_retries < 0:
            raise ValidationError("max_retries must be >= 0", field="max_retries")
        if payload.scheduled_at is not None and not isinstance(payload.scheduled_at, datetime):
            raise ValidationError("scheduled_at must be a datetime", field="scheduled_at")
        body = validate_payload(task_type, payload.payload)
        try:
            payload_json = _dump_json(body)
        except (TypeError, ValueError) as error:
            raise ValidationError(
                f"payload must be JSON-serializable: {error}",
                field="payload",
            ) from error

        now = to_db_datetime(self.clock())
        row = Task(
            task_id=str(uuid4()),
            task_type=task_type.value,
            status=TaskStatus.PENDING.value,
            priority=priority,
            payload_json=payload_json,
            retry_count=0,
            max_retries=max_retries,
            scheduled_at=(
                to_db_datetime(payload.scheduled_at) if payload.scheduled_at is not None else None
            ),
            created_at=now,
            updated_at=now,
        )
        with self.scope(session) as active:
            active.add(row)
            active.flush()
            return to_task_view(row)

    def get(self, task_id: str) -> TaskView:
        check_task_id(task_id)
        with self.session() as session:
            row = self.load(session, task_id)
            if row is None:
                raise NotFoundError(task_id)
            return to_task_view(row)

    def exists(self, task_id: str, *, session: Session | None = None) -> bool:
        check_task_id(task_id)
        with self.scope(session) as active:
            found = active.exec(select(Task.task_id).where(Task.task_id == task_id)).first()
            return found is not None

    def list_tasks(
        self,
        filters: TaskFilters | None = None,
        page: PageRequest | None = None,
    ) -> TaskPage:
        """Filtered, sorted, paginated listing."""

        filters = filters or TaskFilters()
        page = page or PageRequest()
        if page.page < 1:
            raise ValidationError("page must be >= 1", field="page")
        if page.limit < 1:
            raise ValidationError("limit must be >= 1", field="limit")
        limit = min(page.limit, self.max_page_size)
        sort_column = SORTABLE_FIELDS.get(page.sort)
        if sort_column is None:
            raise ValidationError(
                f"Invalid sort field {page.sort!r}. Must be one of: "
                f"{', '.join(sorted(SORTABLE_FIELDS))}",
                field="sort",
            )
        try:
            order = SortOrder(page.order)
        except ValueError as error:
            raise ValidationError("order must be asc or desc", field="order") from error

        conditions = _filter_conditions(filters)
        with self.session() as session:
            total = session.exec(
                select(func.count()).select_from(Task).where(*conditions),
            ).one()
            statement = (
                select(Task)
                .where(*conditions)
                .order_by(
                    col(sort_column).asc() if order == SortOrder.ASC else col(sort_column).desc(),
                    col(Task.created_at).asc(),
                    _INSERTION_ORDER.asc(),
                )
                .offset((page.page - 1) * limit)
                .limit(limit)
            )
            rows = session.exec(statement).all()
        return TaskPage(
            items=[to_task_view(row) for row in rows],
            page=page.page,
            limit=limit,
            total=int(total),
        )

    def delete(self, task_id: str) -> None:
        """Remove a task; its log rows go with it through ON DELETE CASCADE."""

        check_task_id(task_id)
        with self.session() as session:
            result = session.execute(
                sa_delete(Task)
                .where(col(Task.task_id) == task_id)
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                raise NotFoundError(task_id)

    def count_by_status(self) -> dict[TaskStatus, int]:
        with self.session() as session:
            rows = session.exec(
                select(Task.status, func.count()).group_by(Task.status),
            ).all()
        counts = {status: 0 for status in TaskStatus}
        for status, count in rows:
            counts[TaskStatus(status)] = int(count)
        return counts

    def load(self, session: Session, task_id: str) -> Task | None:
        """Read the current row, bypassing any stale identity-map copy."""

        return session.exec(
            select(Task)
            .where(Task.task_id == task_id)
            .execution_options(populate_existing=True),
        ).one_or_none()

    def claim_next_eligible(
        self,
        session: Session,
        *,
        worker_id: str,
        now: datetime,
    ) -> Task | None:
        """Pick and claim the best eligible task in one guarded UPDATE.

        The winner is chosen by a subquery inside the UPDATE itself and the
        write is still guarded by ``status = PENDING``, so two callers can never
        both move the same row to RUNNING.
        """

        db_now = to_db_datetime(now)
        winner = (
            sa_select(Task.task_id)
            .where(
                col(Task.status) == TaskStatus.PENDING.value,
                or_(col(Task.scheduled_at).is_(None), col(Task.scheduled_at) <= db_now),
            )
            .order_by(
                col(Task.priority).desc(),
                col(Task.created_at).asc(),
                _INSERTION_ORDER.asc(),
            )
            .limit(1)
            .correlate(None)
            .scalar_subquery()
        )
        result = session.execute(
            sa_update(Task)
            .where(
                col(Task.task_id) == winner,
                col(Task.status) == TaskStatus.PENDING.value,
            )
            .values(
                status=TaskStatus.RUNNING.value,
                started_at=db_now,
                completed_at=None,
                worker_id=worker_id,
                updated_at=db_now,
            )
            .returning(Task.task_id)
            .execution_options(synchronize_session=False),
        )
        claimed_id = result.scalar_one_or_none()
        if claimed_id is None:
            return None
        return self.load(session, claimed_id)

    def transition(
        self,
        session: Session,
        *,
        task_id: str,
        expected: TaskStatus,
        values: dict[str, Any],
        extra_conditions: Sequence[ColumnElement[bool]] = (),
    ) -> bool:
        """Compare-and-swap write: apply ``values`` only if status is ``expected``."""

        result = session.execute(
            sa_update(Task)
            .where(
                col(Task.task_id) == task_id,
                col(Task.status) == expected.value,
                *extra_conditions,
            )
            .values(**_to_db_values(values))
            .execution_options(synchronize_session=False),
        )
        return result.rowcount == 1

    def list_stale_running(self, *, started_before: datetime) -> list[str]:
        with self.session() as session:
            rows = session.exec(
                select(Task.task_id)
                .where(
                    Task.status == TaskStatus.RUNNING.value,
                    col(Task.started_at) < to_db_datetime(started_before),
                )
                .order_by(col(Task.started_at).asc()),
            ).all()
        return list(rows)


def to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        task_type=TaskType(row.task_type),
        status=TaskStatus(row.status),
        priority=row.priority,
        payload=_load_json_object(row.payload_json) or {},
        result=_load_json_object(row.result_json),
        error_message=row.error_message,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        worker_id=row.worker_id,
        scheduled_at=_optional_aware(row.scheduled_at),
        started_at=_optional_aware(row.started_at),
        completed_at=_optional_aware(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def dump_result(result: dict[str, Any] | None) -> str | None:
    if result is None:
        return None
    return _dump_json(result)


def _filter_conditions(filters: TaskFilters) -> list[ColumnElement[bool]]:
    conditions: list[ColumnElement[bool]] = []
    if filters.task_type is not None:
        conditions.append(col(Task.task_type) == _parse_task_type(filters.task_type).value)
    if filters.status is not None:
        conditions.append(col(Task.status) == _parse_status(filters.status).value)
    if filters.min_priority is not None:
        conditions.append(col(Task.priority) >= filters.min_priority)
    return conditions


def _parse_task_type(value: TaskType | str) -> TaskType:
    try:
        return TaskType(value)
    except ValueError as error:
        raise ValidationError(
            f"Invalid task type {value!r}. Must be one of: "
            f"{', '.join(task_type.value for task_type in TaskType)}",
            field="type",
        ) from error


def _parse_status(value: TaskStatus | str) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError as error:
        raise ValidationError(
            f"Invalid status {value!r}. Must be one of: "
            f"{', '.join(status.value for status in TaskStatus)}",
            field="status",
        ) from error


def check_task_id(task_id: str) -> None:
    """Accept only the canonical lowercase hyphenated form that ``create`` stores."""

    try:
        canonical = str(UUID(task_id))
    except (AttributeError, TypeError, ValueError) as error:
        raise ValidationError("Invalid task ID format", field="task_id") from error
    if canonical != task_id:
        raise ValidationError("Invalid task ID format", field="task_id")


def _to_db_values(values: dict[str, Any]) -> dict[str, Any]:
    converted: dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, Enum):
            converted[key] = value.value
        elif isinstance(value, datetime):
            converted[key] = to_db_datetime(value)
        else:
            converted[key] = value
    return converted


def _dump_json(value: dict[str, Any]) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json_object(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    parsed = json.loads(raw)
    if isinstance(parsed, dict):
        return parsed
    return {"value": parsed}


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
