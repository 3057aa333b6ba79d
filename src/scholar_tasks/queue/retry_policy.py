"""Retry eligibility and exponential backoff."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

# One week; keeps ``now + backoff`` inside the datetime range.
MAX_BACKOFF_SECONDS = 7 * 24 * 3600


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Deterministic backoff: ``base_seconds * 2**retry_count`` capped at ``max_seconds``."""

    base_seconds: float = 30.0
    max_seconds: float = 900.0

    def __post_init__(self) -> None:
        if self.base_seconds < 0:
            raise ValueError("base_seconds must be >= 0")
        if not 0 <= self.max_seconds <= MAX_BACKOFF_SECONDS:
            raise ValueError(f"max_seconds must be between 0 and {MAX_BACKOFF_SECONDS}")

    def is_retryable(self, retry_count: int, max_retries: int) -> bool:
        return retry_count < max_retries

    def backoff(self, retry_count: int) -> timedelta:
        if retry_count < 0:
            raise ValueError(f"retry_count must be >= 0, got {retry_count}")
        # Exponent grows unbounded with retry_count; cap before it overflows float.
        exponent = min(retry_count, 64)
        delay = min(self.max_seconds, self.base_seconds * (2**exponent))
        return timedelta(seconds=delay)
