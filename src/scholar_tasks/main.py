"""CLI entrypoint for scholar-tasks."""

import functools
import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from scholar_tasks import __version__
from scholar_tasks.queue.controllers import (
    ClaimCommand,
    CreateTaskCommand,
    ListTasksCommand,
    RecoverStaleCommand,
    ReportOutcomeCommand,
    StatsCommand,
    TaskCliController,
    TaskIdCommand,
    WorkerCommand,
)
from scholar_tasks.queue.errors import TaskQueueError
from scholar_tasks.queue.models import SortOrder, TaskStatus, TaskType
from scholar_tasks.queue.repository import SORTABLE_FIELDS

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


def _surface_queue_errors(func: Callable[..., None]) -> Callable[..., None]:
    """Turn queue and configuration errors into a clean CLI failure."""

    @functools.wraps(func)
    def wrapper(*args: object, **kwargs: object) -> None:
        try:
            func(*args, **kwargs)
        except (TaskQueueError, ValueError) as error:
            raise click.ClickException(str(error)) from error

    return wrapper


@click.group()
@click.version_option(version=__version__, prog_name="scholar-tasks")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for queue diagnostics.",
)
def scholar_tasks(log_level: str) -> None:
    """Background task queue CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@scholar_tasks.group()
def tasks() -> None:
    """Task admission, dispatch and inspection commands."""


@tasks.command("create")
@_DB_PATH_OPTION
@click.option(
    "--type",
    "task_type",
    type=click.Choice([task_type.value for task_type in TaskType], case_sensitive=False),
    required=True,
    help="Task type.",
)
@click.option("--payload", "payload_json", required=True, help="Task payload as a JSON object.")
@click.option(
    "--priority",
    type=int,
    default=None,
    help="1-10, higher runs first. Defaults to 5.",
)
@click.option(
    "--max-retries",
    type=int,
    default=None,
    help="Automatic retries after failure. Defaults to 3.",
)
@click.option(
    "--scheduled-at",
    default=None,
    help="ISO-8601 instant before which the task is not claimed.",
)
@_surface_queue_errors
def tasks_create(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    payload_json: str,
    priority: int | None,
    max_retries: int | None,
    scheduled_at: str | None,
) -> None:
    """Admit a new PENDING task."""

    _emit_lines(
        TASK_CONTROLLER.create_task(
            CreateTaskCommand(
                db_path=db_path,
                task_type=task_type,
                payload_json=payload_json,
                priority=priority,
                max_retries=max_retries,
                scheduled_at=scheduled_at,
            ),
        ),
    )


@tasks.command("list")
@_DB_PATH_OPTION
@click.option(
    "--type",
    "task_type",
    type=click.Choice([task_type.value for task_type in TaskType], case_sensitive=False),
    default=None,
    help="Optional task type filter.",
)
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--min-priority",
    type=click.IntRange(min=1, max=10),
    default=None,
    help="Only tasks with at least this priority.",
)
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Page size, capped by SCHOLAR_TASKS_MAX_PAGE_SIZE.",
)
@click.option(
    "--sort",
    type=click.Choice(sorted(SORTABLE_FIELDS)),
    default="created_at",
    show_default=True,
)
@click.option(
    "--order",
    type=click.Choice([order.value for order in SortOrder], case_sensitive=False),
    default=SortOrder.DESC.value,
    show_default=True,
)
@_surface_queue_errors
def tasks_list(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str | None,
    status: str | None,
    min_priority: int | None,
    page: int,
    limit: int | None,
    sort: str,
    order: str,
) -> None:
    """List tasks with filters and pagination."""

    _emit_lines(
        TASK_CONTROLLER.list_tasks(
            ListTasksCommand(
                db_path=db_path,
                task_type=task_type,
                status=status,
                min_priority=min_priority,
                page=page,
                limit=limit,
                sort=sort,
                order=order,
            ),
        ),
    )


@tasks.command("show")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
@_surface_queue_errors
def tasks_show(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with its log."""

    _emit_lines(TASK_CONTROLLER.show_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("logs")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
@_surface_queue_errors
def tasks_logs(db_path: Path | None, task_id: str) -> None:
    """Print the audit log of one task, oldest first."""

    _emit_lines(TASK_CONTROLLER.logs(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("delete")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
@_surface_queue_errors
def tasks_delete(db_path: Path | None, task_id: str) -> None:
    """Delete a task together with its log."""

    _emit_lines(TASK_CONTROLLER.delete_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("claim")
@_DB_PATH_OPTION
@click.option("--worker-id", default=None, help="Claiming worker id. Defaults to config.")
@_surface_queue_errors
def tasks_claim(db_path: Path | None, worker_id: str | None) -> None:
    """Claim the next eligible task."""

    _emit_lines(TASK_CONTROLLER.claim(ClaimCommand(db_path=db_path, worker_id=worker_id)))


@tasks.command("complete")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
@click.option("--result", "result_json", default=None, help="Result as a JSON object.")
@click.option("--worker-id", default=None, help="Require this worker to hold the claim.")
@_surface_queue_errors
def tasks_complete(
    db_path: Path | None,
    task_id: str,
    result_json: str | None,
    worker_id: str | None,
) -> None:
    """Report success for a RUNNING task."""

    _emit_lines(
        TASK_CONTROLLER.complete(
            ReportOutcomeCommand(
                db_path=db_path,
                task_id=task_id,
                worker_id=worker_id,
                result_json=result_json,
            ),
        ),
    )


@tasks.command("fail")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
@click.option("--error", "error_message", required=True, help="Error message.")
@click.option("--worker-id", default=None, help="Require this worker to hold the claim.")
@_surface_queue_errors
def tasks_fail(
    db_path: Path | None,
    task_id: str,
    error_message: str,
    worker_id: str | None,
) -> None:
    """Report failure for a RUNNING task; re-queues while retries remain."""

    _emit_lines(
        TASK_CONTROLLER.fail(
            ReportOutcomeCommand(
                db_path=db_path,
                task_id=task_id,
                worker_id=worker_id,
                error_message=error_message,
            ),
        ),
    )


@tasks.command("recover-stale")
@_DB_PATH_OPTION
@click.option(
    "--stale-after-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Override SCHOLAR_TASKS_STALE_RUNNING_SECONDS.",
)
@_surface_queue_errors
def tasks_recover_stale(db_path: Path | None, stale_after_seconds: int | None) -> None:
    """Fail (and possibly re-queue) RUNNING tasks whose worker went silent."""

    _emit_lines(
        TASK_CONTROLLER.recover_stale(
            RecoverStaleCommand(db_path=db_path, stale_after_seconds=stale_after_seconds),
        ),
    )


@tasks.command("stats")
@_DB_PATH_OPTION
@_surface_queue_errors
def tasks_stats(db_path: Path | None) -> None:
    """Show task counts per status."""

    _emit_lines(TASK_CONTROLLER.stats(StatsCommand(db_path=db_path)))


@tasks.command("worker")
@_DB_PATH_OPTION
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
@_surface_queue_errors
def tasks_worker(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
) -> None:
    """Run a worker with the built-in echo handlers."""

    _emit_lines(
        TASK_CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    scholar_tasks()
