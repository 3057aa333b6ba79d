"""Domain models for the background task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskType(str, Enum):
    """Kinds of deferred work accepted by the queue."""

    CRAWL = "CRAWL"
    PARSE_DOCUMENT = "PARSE_DOCUMENT"
    GENERATE_SUMMARY = "GENERATE_SUMMARY"
    INDEX_PAGE = "INDEX_PAGE"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class LogLevel(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5
DEFAULT_MAX_RETRIES = 3


@dataclass(slots=True)
class TaskCreate:
    """Input payload for admitting a task.

    ``task_type`` and ``payload`` arrive unvalidated; ``TaskStore.create`` checks them.
    """

    task_type: TaskType | str
    payload: Any
    priority: int | None = None
    max_retries: int | None = None
    scheduled_at: datetime | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for services, workers and the CLI."""

    task_id: str
    task_type: TaskType
    status: TaskStatus
    priority: int
    payload: dict[str, Any]
    result: dict[str, Any] | None
    error_message: str | None
    retry_count: int
    max_retries: int
    worker_id: str | None
    scheduled_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        # FAILED is only persisted once retries are exhausted.
        return self.status in {TaskStatus.COMPLETED, TaskStatus.FAILED}


@dataclass(slots=True)
class TaskLogView:
    """Task log entry for the audit trail."""

    log_id: int
    task_id: str
    level: LogLevel
    message: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskOutcome:
    """Result reported by a worker for a claimed task."""

    succeeded: bool
    result: dict[str, Any] | None = None
    error_message: str | None = None

    @classmethod
    def success(cls, result: dict[str, Any] | None = None) -> TaskOutcome:
        return cls(succeeded=True, result=result)

    @classmethod
    def failure(cls, error_message: str) -> TaskOutcome:
        return cls(succeeded=False, error_message=error_message)


@dataclass(slots=True)
class TaskFilters:
    task_type: TaskType | str | None = None
    status: TaskStatus | str | None = None
    min_priority: int | None = None


@dataclass(slots=True)
class PageRequest:
    """Pagination and sorting for task listing."""

    page: int = 1
    limit: int = 20
    sort: str = "created_at"
    order: SortOrder = SortOrder.DESC


@dataclass(slots=True)
class TaskPage:
    items: list[TaskView]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


@dataclass(slots=True)
class QueueStats:
    """Task counts per status."""

    counts: dict[TaskStatus, int]

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def pending(self) -> int:
        return self.counts.get(TaskStatus.PENDING, 0)

    @property
    def failed(self) -> int:
        return self.counts.get(TaskStatus.FAILED, 0)
