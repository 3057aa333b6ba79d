"""Controllers for task queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from scholar_tasks.config import Settings
from scholar_tasks.queue.errors import ValidationError
from scholar_tasks.queue.models import (
    PageRequest,
    SortOrder,
    TaskFilters,
    TaskLogView,
    TaskOutcome,
    TaskStatus,
    TaskType,
    TaskView,
)
from scholar_tasks.queue.repository import TaskStore
from scholar_tasks.queue.retry_policy import RetryPolicy
from scholar_tasks.queue.services import TaskQueueService
from scholar_tasks.queue.worker import TaskWorker, echo_handlers
from scholar_tasks.storage.common import from_iso


@dataclass(slots=True)
class CreateTaskCommand:
    """CLI input for task admission."""

    db_path: Path | None
    task_type: str
    payload_json: str
    priority: int | None
    max_retries: int | None
    scheduled_at: str | None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    task_type: str | None
    status: str | None
    min_priority: int | None
    page: int
    limit: int | None
    sort: str
    order: str


@dataclass(slots=True)
class TaskIdCommand:
    """CLI input for single-task operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ClaimCommand:
    db_path: Path | None
    worker_id: str | None


@dataclass(slots=True)
class ReportOutcomeCommand:
    """CLI input for complete/fail operations."""

    db_path: Path | None
    task_id: str
    worker_id: str | None
    result_json: str | None = None
    error_message: str | None = None


@dataclass(slots=True)
class RecoverStaleCommand:
    db_path: Path | None
    stale_after_seconds: int | None


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int = 1


class TaskCliController:
    """Coordinates queue, worker and inspection CLI operations."""

    def create_task(self, command: CreateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = _parse_json_object(command.payload_json, field="payload")
        scheduled_at = _parse_datetime(command.scheduled_at, field="scheduled_at")
        with _service(settings) as service:
            task = service.create_task(
                command.task_type.strip().upper(),
                payload,
                priority=command.priority,
                max_retries=command.max_retries,
                scheduled_at=scheduled_at,
            )
        return [
            "Task created: "
            f"task_id={task.task_id} type={task.task_type.value} status={task.status.value} "
            f"priority={task.priority} max_retries={task.max_retries}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        filters = TaskFilters(
            task_type=_parse_enum(TaskType, _upper(command.task_type), field="type"),
            status=_parse_enum(TaskStatus, _upper(command.status), field="status"),
            min_priority=command.min_priority,
        )
        page = PageRequest(
            page=command.page,
            limit=command.limit or settings.listing.default_page_size,
            sort=command.sort,
            order=_parse_enum(SortOrder, command.order.lower(), field="order") or SortOrder.DESC,
        )
        with _service(settings) as service:
            result = service.list_tasks(filters, page)

        lines = [
            f"Tasks: {len(result.items)} of {result.total} "
            f"(page {result.page}/{max(result.total_pages, 1)}, limit {result.limit})",
        ]
        lines.extend(f"  {_task_line(task)}" for task in result.items)
        return lines

    def show_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            task = service.get_task(command.task_id)
            logs = service.list_logs(command.task_id)

        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type.value}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Worker: {task.worker_id or '-'}",
            f"Scheduled at: {_iso(task.scheduled_at)}",
            f"Started at: {_iso(task.started_at)}",
            f"Completed at: {_iso(task.completed_at)}",
            f"Payload: {_json_or_dash(task.payload)}",
            f"Result: {_json_or_dash(task.result)}",
            f"Error: {task.error_message or '-'}",
            f"Logs: {len(logs)}",
        ]
        lines.extend(f"  {_log_line(entry)}" for entry in logs)
        return lines

    def logs(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            entries = service.list_logs(command.task_id)
        return [f"Logs: {len(entries)}", *(f"  {_log_line(entry)}" for entry in entries)]

    def delete_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            service.delete_task(command.task_id)
        return [f"Task deleted: task_id={command.task_id}"]

    def claim(self, command: ClaimCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        worker_id = command.worker_id or settings.worker.worker_id
        with _service(settings) as service:
            task = service.claim_next(worker_id)
        if task is None:
            return ["No eligible task."]
        return [
            f"Task claimed: task_id={task.task_id} type={task.task_type.value} "
            f"priority={task.priority} worker={worker_id}",
            f"Payload: {json.dumps(task.payload, ensure_ascii=False, sort_keys=True)}",
        ]

    def complete(self, command: ReportOutcomeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        result = (
            _parse_json_object(command.result_json, field="result")
            if command.result_json is not None
            else None
        )
        with _service(settings) as service:
            task = service.report_outcome(
                command.task_id,
                TaskOutcome.success(result),
                worker_id=command.worker_id,
            )
        return [f"Task completed: task_id={task.task_id} status={task.status.value}"]

    def fail(self, command: ReportOutcomeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            task = service.report_outcome(
                command.task_id,
                TaskOutcome.failure(command.error_message or ""),
                worker_id=command.worker_id,
            )
        if task.status == TaskStatus.PENDING:
            return [
                f"Task failed: task_id={task.task_id} retry {task.retry_count}/"
                f"{task.max_retries} scheduled at {_iso(task.scheduled_at)}",
            ]
        return [f"Task failed: task_id={task.task_id} status={task.status.value} (no retries left)"]

    def recover_stale(self, command: RecoverStaleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        seconds = (
            command.stale_after_seconds
            if command.stale_after_seconds is not None
            else settings.worker.stale_running_seconds
        )
        if seconds <= 0:
            return ["Stale recovery disabled (threshold is 0)."]
        with _service(settings) as service:
            recovered = service.recover_stale_running(timedelta(seconds=seconds))
        lines = [f"Recovered stale tasks: {len(recovered)}"]
        lines.extend(f"  {_task_line(task)}" for task in recovered)
        return lines

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            snapshot = service.stats()
        lines = [f"Tasks total: {snapshot.total}"]
        lines.extend(
            f"  {status.value.lower()}: {snapshot.counts.get(status, 0)}" for status in TaskStatus
        )
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            worker = TaskWorker(
                service=service,
                handlers=echo_handlers(),
                worker_id=settings.worker.worker_id,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                recover_stale=settings.worker.stale_running_seconds > 0,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"recovered={summary.recovered} idle_polls={summary.idle_polls}",
        ]


@contextmanager
def _service(settings: Settings) -> Iterator[TaskQueueService]:
    store = TaskStore(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        max_page_size=settings.listing.max_page_size,
    )
    store.init_schema()
    stale_seconds = settings.worker.stale_running_seconds
    try:
        yield TaskQueueService(
            store=store,
            retry_policy=RetryPolicy(
                base_seconds=settings.retry.base_seconds,
                max_seconds=settings.retry.max_seconds,
            ),
            stale_running_after=timedelta(seconds=stale_seconds) if stale_seconds > 0 else None,
        )
    finally:
        store.close()


def _parse_json_object(raw: str, *, field: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValidationError(f"{field} must be valid JSON: {error}", field=field) from error
    if not isinstance(parsed, dict):
        raise ValidationError(f"{field} must be a valid JSON object", field=field)
    return parsed


def _parse_datetime(raw: str | None, *, field: str):
    if raw is None:
        return None
    try:
        return from_iso(raw.strip())
    except ValueError as error:
        raise ValidationError(f"{field} must be an ISO-8601 datetime", field=field) from error


def _parse_enum(enum_cls, value: str | None, *, field: str):
    if value is None:
        return None
    try:
        return enum_cls(value.strip())
    except ValueError as error:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field}. Must be one of: {allowed}", field=field) from error


def _upper(value: str | None) -> str | None:
    return value.strip().upper() if value is not None else None


def _task_line(task: TaskView) -> str:
    return (
        f"{task.task_id} type={task.task_type.value} status={task.status.value} "
        f"priority={task.priority} retries={task.retry_count}/{task.max_retries} "
        f"scheduled_at={_iso(task.scheduled_at)}"
    )


def _log_line(entry: TaskLogView) -> str:
    transition = (
        f"{entry.status_from.value if entry.status_from else '-'} -> "
        f"{entry.status_to.value if entry.status_to else '-'}"
    )
    return f"{entry.created_at.isoformat()} {entry.level.value} {transition} {entry.message}"


def _json_or_dash(value: dict[str, Any] | None) -> str:
    if value is None:
        return "-"
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _iso(value) -> str:
    return value.isoformat() if value is not None else "-"
