"""Queue worker: claims tasks, runs registered handlers, reports outcomes."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from scholar_tasks.queue.errors import ConflictError
from scholar_tasks.queue.models import TaskOutcome, TaskStatus, TaskType, TaskView
from scholar_tasks.queue.services import TaskQueueService

logger = logging.getLogger(__name__)

TaskHandler = Callable[[TaskView], Mapping[str, Any] | None]


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    recovered: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.recovered += other.recovered
        self.idle_polls += other.idle_polls


def echo_handler(task: TaskView) -> dict[str, Any]:
    """Smoke-test handler: completes every task with its own payload."""

    return {"echo": task.payload, "task_type": task.task_type.value}


def echo_handlers() -> dict[TaskType, TaskHandler]:
    return {task_type: echo_handler for task_type in TaskType}


class TaskWorker:
    """Consumes queued tasks and executes them via per-type handlers.

    The handlers do the real work (crawl, parse, summarize, index); the worker
    only moves tasks through claim and report.
    """

    def __init__(
        self,
        *,
        service: TaskQueueService,
        handlers: Mapping[TaskType, TaskHandler],
        worker_id: str,
        poll_interval_seconds: float = 2.0,
        recover_stale: bool = True,
    ) -> None:
        self.service = service
        self.handlers = dict(handlers)
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.recover_stale = recover_stale
        self._stop_requested = False

    def run_once(self) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        if self.recover_stale:
            summary.recovered = len(self.service.recover_stale_running())

        task = self.service.claim_next(self.worker_id)
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        outcome = self._execute(task)
        try:
            reported = self.service.report_outcome(
                task.task_id,
                outcome,
                worker_id=self.worker_id,
            )
        except ConflictError as error:
            # The claim was taken away (stale sweep) while the handler ran.
            logger.warning("Outcome for task %s discarded: %s", task.task_id, error)
            return summary

        if reported.status == TaskStatus.COMPLETED:
            summary.succeeded = 1
        elif reported.status == TaskStatus.PENDING:
            summary.retried = 1
        else:
            summary.failed = 1
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run until the queue is idle, ``max_tasks`` is reached or a stop signal arrives.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting (None = poll forever).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self) -> None:
        self._stop_requested = True

    def _execute(self, task: TaskView) -> TaskOutcome:
        handler = self.handlers.get(task.task_type)
        if handler is None:
            return TaskOutcome.failure(
                f"No handler registered for task type {task.task_type.value}",
            )
        started = time.monotonic()
        try:
            result = handler(task)
        except Exception as error:  # noqa: BLE001
            logger.exception("Handler for task %s raised", task.task_id)
            return TaskOutcome.failure(f"{type(error).__name__}: {error}")
        if result is not None and not isinstance(result, Mapping):
            return TaskOutcome.failure(
                f"Handler returned {type(result).__name__}, expected a mapping or None",
            )
        logger.debug(
            "Handler for task %s finished in %.3fs",
            task.task_id,
            time.monotonic() - started,
        )
        return TaskOutcome.success(dict(result) if result is not None else None)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        def _handler(signum: int, _: object | None) -> None:
            logger.info("Worker %s stopping on %s", self.worker_id, signal.Signals(signum).name)
            self.request_stop()

        try:
            original_sigint = signal.signal(signal.SIGINT, _handler)
            original_sigterm = signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
