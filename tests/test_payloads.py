from __future__ import annotations

from typing import Any

import allure
import pytest

from scholar_tasks.queue.errors import ValidationError
from scholar_tasks.queue.models import TaskType
from scholar_tasks.queue.payloads import PAYLOAD_VALIDATORS, validate_payload

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Task Admission"),
]


def test_every_task_type_has_a_validator() -> None:
    assert set(PAYLOAD_VALIDATORS) == set(TaskType)


@pytest.mark.parametrize(
    ("task_type", "payload"),
    [
        (TaskType.CRAWL, {"url": "https://arxiv.org/list/cs.CL/new", "depth": 2}),
        (TaskType.PARSE_DOCUMENT, {"document_url": "https://arxiv.org/pdf/2401.00001"}),
        (TaskType.PARSE_DOCUMENT, {"paper_id": "2401.00001"}),
        (TaskType.GENERATE_SUMMARY, {"paper_id": "2401.00001", "max_words": 150}),
        (TaskType.INDEX_PAGE, {"page_id": "p-17"}),
        (TaskType.INDEX_PAGE, {"url": "http://example.com/papers/17"}),
    ],
)
def test_valid_payloads_are_accepted(task_type: TaskType, payload: dict[str, Any]) -> None:
    assert validate_payload(task_type, payload) == payload


def test_unknown_keys_are_kept() -> None:
    payload = {"url": "https://example.com", "source": "rss", "tags": ["nlp"]}

    assert validate_payload(TaskType.CRAWL, payload) == payload


@pytest.mark.parametrize(
    ("task_type", "payload", "message"),
    [
        (TaskType.CRAWL, {}, "payload.url is required"),
        (TaskType.CRAWL, {"url": "ftp://example.com"}, "http:// or https://"),
        (TaskType.CRAWL, {"url": "https://example.com", "depth": -1}, "depth"),
        (TaskType.CRAWL, {"url": "https://example.com", "depth": True}, "depth"),
        (TaskType.PARSE_DOCUMENT, {}, "document_url or paper_id"),
        (TaskType.PARSE_DOCUMENT, {"paper_id": "  "}, "non-empty string"),
        (TaskType.GENERATE_SUMMARY, {"max_words": 10}, "payload.paper_id is required"),
        (TaskType.GENERATE_SUMMARY, {"paper_id": "x", "max_words": 0}, "max_words"),
        (TaskType.INDEX_PAGE, {"title": "orphan"}, "url or page_id"),
    ],
)
def test_invalid_payloads_are_rejected(
    task_type: TaskType,
    payload: dict[str, Any],
    message: str,
) -> None:
    with pytest.raises(ValidationError, match=message) as excinfo:
        validate_payload(task_type, payload)

    assert excinfo.value.field == "payload"


@pytest.mark.parametrize("payload", [None, [], "url", 42])
def test_non_object_payload_is_rejected(payload: object) -> None:
    with pytest.raises(ValidationError, match="payload must be a JSON object"):
        validate_payload(TaskType.CRAWL, payload)


def test_non_string_keys_are_rejected() -> None:
    with pytest.raises(ValidationError, match="keys must be strings"):
        validate_payload(TaskType.INDEX_PAGE, {1: "x", "page_id": "p"})
