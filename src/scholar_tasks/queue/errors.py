"""Error taxonomy surfaced by the task queue core."""

from __future__ import annotations

from scholar_tasks.queue.models import TaskStatus


class TaskQueueError(Exception):
    """Base class for queue errors reported to callers."""


class ValidationError(TaskQueueError, ValueError):
    """Bad input: unknown type, priority out of range, malformed payload or id."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(TaskQueueError, LookupError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class ConflictError(TaskQueueError):
    """Illegal state transition; nothing was written."""

    def __init__(
        self,
        *,
        task_id: str,
        current: TaskStatus,
        expected: TaskStatus,
        action: str,
        reason: str | None = None,
    ) -> None:
        message = (
            f"Cannot {action} task {task_id}: status is {current.value}, "
            f"expected {expected.value}."
        )
        if reason:
            message = f"Cannot {action} task {task_id}: {reason}"
        super().__init__(message)
        self.task_id = task_id
        self.current = current
        self.expected = expected
