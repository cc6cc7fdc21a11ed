from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import allure

from task_conduit.config import AuditSettings, Settings
from task_conduit.models import (
    AttemptOutcome,
    ExecutionResult,
    GitSnapshot,
    GitSnapshotPair,
    InvocationInfo,
    TaskRequest,
)
from task_conduit.orchestrator.audit import (
    audit_enabled,
    build_run_basename,
    make_task_id,
    utc_timestamp,
    write_audit,
)
from task_conduit.orchestrator.run_log import ExecutionLogWriter

pytestmark = [
    allure.epic("Orchestrator"),
    allure.feature("Audit Records and Run Logs"),
]

MOMENT = datetime(2025, 3, 4, 5, 6, 7, 890000, tzinfo=UTC)


def _result(task_id: str = "t/1") -> ExecutionResult:
    return ExecutionResult(
        ok=True,
        task_id=task_id,
        provider="codex",
        started_at=utc_timestamp(MOMENT),
        prompt="p",
        git=GitSnapshotPair(baseline=GitSnapshot(), post=GitSnapshot()),
        invocation=InvocationInfo(command="codex"),
    )


def test_timestamp_and_generated_task_id() -> None:
    assert utc_timestamp(MOMENT) == "2025-03-04T05:06:07.890Z"
    task_id = make_task_id(MOMENT)
    assert task_id.startswith("task-2025-03-04T05-06-07-890Z-")
    assert len(task_id.rsplit("-", 1)[1]) == 6


def test_run_basename_sanitizes_segments() -> None:
    assert build_run_basename("my provider", "a/b:c", "2025-03-04T05:06:07.890Z") == (
        "2025-03-04T05-06-07-890Z__my_provider__a_b_c"
    )
    assert build_run_basename("", "", "x") == "x__provider__task"


def test_audit_enabled_respects_task_override() -> None:
    settings = Settings()

    assert audit_enabled(settings, TaskRequest(provider="p", instructions="i")) is True
    opted_out = TaskRequest(provider="p", instructions="i", audit_enabled=False)
    assert audit_enabled(settings, opted_out) is False
    assert (
        audit_enabled(
            Settings(audit=AuditSettings(enabled=False)),
            TaskRequest(provider="p", instructions="i", audit_enabled=True),
        )
        is False
    )


def test_write_audit_creates_record(tmp_path: Path) -> None:
    task = TaskRequest(provider="codex", instructions="i", cwd=str(tmp_path), task_id="t/1")

    path = write_audit(Settings(), task, _result())

    expected = tmp_path / ".task-conduit" / "audit" / "2025-03-04T05-06-07-890Z__codex__t_1.json"
    assert path == expected.resolve()
    record = json.loads(path.read_text("utf-8"))
    assert record["task"] == {
        "provider": "codex",
        "instructions": "i",
        "taskId": "t/1",
        "cwd": str(tmp_path),
    }
    assert record["result"]["taskId"] == "t/1"


def test_write_audit_failure_is_not_fatal(tmp_path: Path) -> None:
    blocker = tmp_path / "blocked"
    blocker.write_text("file, not a directory", "utf-8")
    settings = Settings(audit=AuditSettings(enabled=True, dir="blocked/audit"))
    task = TaskRequest(provider="codex", instructions="i", cwd=str(tmp_path))

    assert write_audit(settings, task, _result()) is None


def test_execution_log_writer_appends_sections(tmp_path: Path) -> None:
    writer = ExecutionLogWriter.create(
        log_dir=tmp_path / "logs",
        task_id="t1",
        provider_id="codex",
        cwd="/work",
        started_at="2025-03-04T05:06:07.890Z",
        timeout_seconds=2.5,
        max_attempts=3,
    )

    writer.attempt_started(1)
    writer.attempt_summary(
        AttemptOutcome(
            stdout="",
            stderr="",
            exit_code=-1,
            duration_ms=12,
            timed_out=True,
            signal="SIGKILL",
        ),
    )

    assert writer.describe().to_payload() == {"path": str(writer.path), "format": "markdown"}
    assert writer.path.read_text("utf-8") == (
        "# Run log\n"
        "Task: t1\n"
        "Provider: codex\n"
        "Cwd: /work\n"
        "Started: 2025-03-04T05:06:07.890Z\n"
        "Idle timeout: 2.5s\n"
        "Max attempts: 3\n"
        "\n"
        "\n## Attempt 1\n"
        "- Exit code: -1\n"
        "- Duration: 12ms\n"
        "- Timed out: yes\n"
        "- Signal: SIGKILL\n"
    )


def test_execution_log_writer_returns_none_when_directory_unusable(tmp_path: Path) -> None:
    blocker = tmp_path / "logs"
    blocker.write_text("", "utf-8")

    writer = ExecutionLogWriter.create(
        log_dir=blocker,
        task_id="t1",
        provider_id="codex",
        cwd="/work",
        started_at="s",
        timeout_seconds=1,
        max_attempts=1,
    )

    assert writer is None
