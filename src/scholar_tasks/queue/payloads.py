"""Per-task-type payload shapes.

Each ``TaskType`` owns one validator. Payloads stay opaque beyond the keys
checked here: unknown keys are kept as-is and handed to the worker.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any
from urllib.parse import urlparse

from scholar_tasks.queue.errors import ValidationError
from scholar_tasks.queue.models import TaskType

PayloadValidator = Callable[[Mapping[str, Any]], None]


def validate_payload(task_type: TaskType, payload: Any) -> dict[str, Any]:
    """Return payload as a plain dict or raise ``ValidationError``."""

    if not isinstance(payload, Mapping):
        raise ValidationError("payload must be a JSON object", field="payload")
    if not all(isinstance(key, str) for key in payload):
        raise ValidationError("payload keys must be strings", field="payload")
    PAYLOAD_VALIDATORS[task_type](payload)
    return dict(payload)


def _validate_crawl(payload: Mapping[str, Any]) -> None:
    _require_http_url(payload, "url", required=True)
    depth = payload.get("depth")
    if depth is not None and (not _is_int(depth) or depth < 0):
        raise ValidationError("payload.depth must be a non-negative integer", field="payload")


def _validate_parse_document(payload: Mapping[str, Any]) -> None:
    has_url = _require_http_url(payload, "document_url", required=False)
    has_paper = _require_text(payload, "paper_id", required=False)
    if not (has_url or has_paper):
        raise ValidationError(
            "PARSE_DOCUMENT payload requires document_url or paper_id",
            field="payload",
        )


def _validate_generate_summary(payload: Mapping[str, Any]) -> None:
    _require_text(payload, "paper_id", required=True)
    max_words = payload.get("max_words")
    if max_words is not None and (not _is_int(max_words) or max_words <= 0):
        raise ValidationError("payload.max_words must be a positive integer", field="payload")


def _validate_index_page(payload: Mapping[str, Any]) -> None:
    has_url = _require_http_url(payload, "url", required=False)
    has_page = _require_text(payload, "page_id", required=False)
    if not (has_url or has_page):
        raise ValidationError("INDEX_PAGE payload requires url or page_id", field="payload")


PAYLOAD_VALIDATORS: dict[TaskType, PayloadValidator] = {
    TaskType.CRAWL: _validate_crawl,
    TaskType.PARSE_DOCUMENT: _validate_parse_document,
    TaskType.GENERATE_SUMMARY: _validate_generate_summary,
    TaskType.INDEX_PAGE: _validate_index_page,
}


def _require_http_url(payload: Mapping[str, Any], key: str, *, required: bool) -> bool:
    value = payload.get(key)
    if value is None:
        if required:
            raise ValidationError(f"payload.{key} is required", field="payload")
        return False
    if not isinstance(value, str):
        raise ValidationError(f"payload.{key} must be a string", field="payload")
    parsed = urlparse(value.strip())
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValidationError(
            f"payload.{key} must be an absolute http:// or https:// URL, got {value!r}",
            field="payload",
        )
    return True


def _require_text(payload: Mapping[str, Any], key: str, *, required: bool) -> bool:
    value = payload.get(key)
    if value is None:
        if required:
            raise ValidationError(f"payload.{key} is required", field="payload")
        return False
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"payload.{key} must be a non-empty string", field="payload")
    return True


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
