from __future__ import annotations

import json
import re
from pathlib import Path

import allure
from click.testing import CliRunner

from scholar_tasks.main import scholar_tasks

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("CLI"),
]

_TASK_ID = re.compile(r"task_id=([0-9a-f-]{36})")


def _create(runner: CliRunner, task_type: str, payload: dict, *extra: str) -> str:
    result = runner.invoke(
        scholar_tasks,
        ["tasks", "create", "--type", task_type, "--payload", json.dumps(payload), *extra],
    )
    assert result.exit_code == 0, result.output
    match = _TASK_ID.search(result.output)
    assert match is not None
    return match.group(1)


def test_cli_task_lifecycle_round_trip(scholar_env: Path) -> None:
    runner = CliRunner()
    task_id = _create(
        runner,
        "GENERATE_SUMMARY",
        {"paper_id": "2401.00001"},
        "--priority",
        "8",
        "--max-retries",
        "1",
    )

    listed = runner.invoke(scholar_tasks, ["tasks", "list", "--status", "PENDING"])
    assert listed.exit_code == 0, listed.output
    assert "Tasks: 1 of 1 (page 1/1, limit 20)" in listed.output
    assert task_id in listed.output

    claim = runner.invoke(scholar_tasks, ["tasks", "claim"])
    assert claim.exit_code == 0, claim.output
    assert f"Task claimed: task_id={task_id}" in claim.output
    assert "worker=cli-worker" in claim.output

    fail = runner.invoke(
        scholar_tasks,
        ["tasks", "fail", "--task-id", task_id, "--error", "crawl timeout"],
    )
    assert fail.exit_code == 0, fail.output
    assert "retry 1/1 scheduled at" in fail.output

    reclaim = runner.invoke(scholar_tasks, ["tasks", "claim", "--worker-id", "cli-worker-2"])
    assert reclaim.exit_code == 0, reclaim.output
    assert task_id in reclaim.output

    complete = runner.invoke(
        scholar_tasks,
        [
            "tasks",
            "complete",
            "--task-id",
            task_id,
            "--worker-id",
            "cli-worker-2",
            "--result",
            '{"summary": "ok"}',
        ],
    )
    assert complete.exit_code == 0, complete.output
    assert f"Task completed: task_id={task_id} status=COMPLETED" in complete.output

    show = runner.invoke(scholar_tasks, ["tasks", "show", "--task-id", task_id])
    assert show.exit_code == 0, show.output
    assert "Status: COMPLETED" in show.output
    assert "Retries: 1/1" in show.output
    assert 'Result: {"summary": "ok"}' in show.output
    assert "Logs: 6" in show.output

    logs = runner.invoke(scholar_tasks, ["tasks", "logs", "--task-id", task_id])
    assert logs.exit_code == 0, logs.output
    assert "ERROR RUNNING -> FAILED crawl timeout" in logs.output
    assert "WARN FAILED -> PENDING Retry scheduled" in logs.output

    stats = runner.invoke(scholar_tasks, ["tasks", "stats"])
    assert stats.exit_code == 0, stats.output
    assert "Tasks total: 1" in stats.output
    assert "completed: 1" in stats.output

    delete = runner.invoke(scholar_tasks, ["tasks", "delete", "--task-id", task_id])
    assert delete.exit_code == 0, delete.output
    assert f"Task deleted: task_id={task_id}" in delete.output

    missing = runner.invoke(scholar_tasks, ["tasks", "show", "--task-id", task_id])
    assert missing.exit_code == 1
    assert "Task not found" in missing.output


def test_cli_fail_without_retries_is_terminal(scholar_env: Path) -> None:
    runner = CliRunner()
    task_id = _create(runner, "INDEX_PAGE", {"page_id": "p1"}, "--max-retries", "0")
    assert runner.invoke(scholar_tasks, ["tasks", "claim"]).exit_code == 0

    fail = runner.invoke(scholar_tasks, ["tasks", "fail", "--task-id", task_id, "--error", "x"])

    assert fail.exit_code == 0, fail.output
    assert "status=FAILED (no retries left)" in fail.output


def test_cli_claim_on_empty_queue(scholar_env: Path) -> None:
    result = CliRunner().invoke(scholar_tasks, ["tasks", "claim"])

    assert result.exit_code == 0, result.output
    assert "No eligible task." in result.output


def test_cli_rejects_invalid_input(scholar_env: Path) -> None:
    runner = CliRunner()

    bad_priority = runner.invoke(
        scholar_tasks,
        [
            "tasks",
            "create",
            "--type",
            "CRAWL",
            "--payload",
            '{"url": "https://a.io"}',
            "--priority",
            "11",
        ],
    )
    assert bad_priority.exit_code == 1
    assert "priority must be between 1 and 10" in bad_priority.output

    bad_payload = runner.invoke(
        scholar_tasks,
        ["tasks", "create", "--type", "CRAWL", "--payload", "[1, 2]"],
    )
    assert bad_payload.exit_code == 1
    assert "payload must be a valid JSON object" in bad_payload.output

    bad_type = runner.invoke(
        scholar_tasks,
        ["tasks", "create", "--type", "PARSE_PDF", "--payload", "{}"],
    )
    assert bad_type.exit_code == 2

    bad_id = runner.invoke(scholar_tasks, ["tasks", "show", "--task-id", "nope"])
    assert bad_id.exit_code == 1
    assert "Invalid task ID format" in bad_id.output


def test_cli_complete_pending_task_is_conflict(scholar_env: Path) -> None:
    runner = CliRunner()
    task_id = _create(runner, "INDEX_PAGE", {"page_id": "p1"})

    result = runner.invoke(scholar_tasks, ["tasks", "complete", "--task-id", task_id])

    assert result.exit_code == 1
    assert "PENDING" in result.output


def test_cli_worker_processes_queue(scholar_env: Path) -> None:
    runner = CliRunner()
    first = _create(runner, "CRAWL", {"url": "https://arxiv.org/list/cs.CL/new"})
    _create(runner, "INDEX_PAGE", {"page_id": "p1"})

    result = runner.invoke(scholar_tasks, ["tasks", "worker", "--loop", "--max-idle-polls", "1"])

    assert result.exit_code == 0, result.output
    assert "processed=2 succeeded=2 failed=0 retried=0" in result.output

    show = runner.invoke(scholar_tasks, ["tasks", "show", "--task-id", first])
    assert "Status: COMPLETED" in show.output
    assert '"task_type": "CRAWL"' in show.output


def test_cli_recover_stale_and_pagination(scholar_env: Path) -> None:
    runner = CliRunner()
    for index in range(3):
        _create(runner, "INDEX_PAGE", {"page_id": f"p{index}"})

    page = runner.invoke(
        scholar_tasks,
        ["tasks", "list", "--limit", "2", "--page", "2", "--sort", "priority", "--order", "asc"],
    )
    assert page.exit_code == 0, page.output
    assert "Tasks: 1 of 3 (page 2/2, limit 2)" in page.output

    recover = runner.invoke(
        scholar_tasks,
        ["tasks", "recover-stale", "--stale-after-seconds", "60"],
    )
    assert recover.exit_code == 0, recover.output
    assert "Recovered stale tasks: 0" in recover.output


def test_cli_version() -> None:
    result = CliRunner().invoke(scholar_tasks, ["--version"])

    assert result.exit_code == 0
    assert "scholar-tasks" in result.output
