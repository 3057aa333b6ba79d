"""Runtime configuration for the task queue."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from scholar_tasks.queue.retry_policy import MAX_BACKOFF_SECONDS


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass(slots=True)
class RetrySettings:
    """Backoff for automatic re-queue of failed tasks."""

    base_seconds: float = 30.0
    max_seconds: float = 900.0


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop settings."""

    worker_id: str = field(default_factory=_default_worker_id)
    poll_interval_seconds: float = 2.0
    stale_running_seconds: int = 1_800


@dataclass(slots=True)
class ListingSettings:
    default_page_size: int = 20
    max_page_size: int = 100


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".scholar_tasks.db")
    sqlite_busy_timeout_ms: int = 5_000
    retry: RetrySettings = field(default_factory=RetrySettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    listing: ListingSettings = field(default_factory=ListingSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        settings = cls(
            db_path=db_path or Path(os.getenv("SCHOLAR_TASKS_DB_PATH", ".scholar_tasks.db")),
            sqlite_busy_timeout_ms=int(os.getenv("SCHOLAR_TASKS_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            retry=RetrySettings(
                base_seconds=float(os.getenv("SCHOLAR_TASKS_RETRY_BASE_SECONDS", "30")),
                max_seconds=float(os.getenv("SCHOLAR_TASKS_RETRY_MAX_SECONDS", "900")),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("SCHOLAR_TASKS_WORKER_ID", "").strip() or _default_worker_id(),
                poll_interval_seconds=float(
                    os.getenv("SCHOLAR_TASKS_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                stale_running_seconds=int(
                    os.getenv("SCHOLAR_TASKS_STALE_RUNNING_SECONDS", "1800"),
                ),
            ),
            listing=ListingSettings(
                default_page_size=int(os.getenv("SCHOLAR_TASKS_DEFAULT_PAGE_SIZE", "20")),
                max_page_size=int(os.getenv("SCHOLAR_TASKS_MAX_PAGE_SIZE", "100")),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("SCHOLAR_TASKS_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.retry.base_seconds < 0:
            raise ValueError("SCHOLAR_TASKS_RETRY_BASE_SECONDS must be >= 0.")
        if self.retry.max_seconds < self.retry.base_seconds:
            raise ValueError(
                "SCHOLAR_TASKS_RETRY_MAX_SECONDS must be >= SCHOLAR_TASKS_RETRY_BASE_SECONDS.",
            )
        if self.retry.max_seconds > MAX_BACKOFF_SECONDS:
            raise ValueError(
                f"SCHOLAR_TASKS_RETRY_MAX_SECONDS must be <= {MAX_BACKOFF_SECONDS}.",
            )
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("SCHOLAR_TASKS_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.stale_running_seconds < 0:
            raise ValueError("SCHOLAR_TASKS_STALE_RUNNING_SECONDS must be >= 0.")
        if self.listing.max_page_size <= 0:
            raise ValueError("SCHOLAR_TASKS_MAX_PAGE_SIZE must be > 0.")
        if not 0 < self.listing.default_page_size <= self.listing.max_page_size:
            raise ValueError(
                "SCHOLAR_TASKS_DEFAULT_PAGE_SIZE must be between 1 and "
                "SCHOLAR_TASKS_MAX_PAGE_SIZE.",
            )
