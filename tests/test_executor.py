from __future__ import annotations

import json
import sys
from pathlib import Path

import allure
import pytest

from task_conduit.models import HealthSource, ProviderHealthStatus, TaskRequest
from task_conduit.orchestrator import TaskExecutor
from task_conduit.providers.health_cache import ProviderHealthCache

pytestmark = [
    allure.epic("Orchestrator"),
    allure.feature("Task Execution"),
]


@pytest.fixture()
def sleeps() -> list[float]:
    return []


def _executor(settings, sleeps: list[float], cache: ProviderHealthCache | None = None):
    cache = cache or ProviderHealthCache()
    return TaskExecutor(settings, cache, sleep=sleeps.append), cache


def _task(repo: Path, **overrides) -> TaskRequest:
    values = {"provider": "echo", "instructions": "Update the README", "cwd": str(repo)}
    values.update(overrides)
    return TaskRequest(**values)


def test_successful_run_populates_result(git_repo: Path, make_settings, sleeps) -> None:
    executor, _ = _executor(make_settings(), sleeps)

    result = executor.run(_task(git_repo, task_id="t-1"))

    assert result.ok is True, result.errors
    assert result.task_id == "t-1"
    assert result.attempts == 1
    assert result.runner.exit_code == 0
    assert result.invocation.exit_code == 0
    assert result.result.raw == "## 1.0 SYSTEM DIRECTIVE"
    assert "Update the README" in result.prompt
    assert result.test.skipped is True
    assert result.test.note == "No testCommand provided."
    assert result.execution_log is None
    assert sleeps == []
    payload = result.to_payload()
    assert payload["taskId"] == "t-1"
    assert payload["invocation"]["exitCode"] == 0


def test_retryable_failure_uses_exactly_max_attempts(git_repo: Path, make_settings, sleeps) -> None:
    executor, cache = _executor(make_settings("--mode", "fail", max_attempts=3), sleeps)

    result = executor.run(_task(git_repo))

    assert result.ok is False
    assert result.attempts == 3
    assert sleeps == [0.5, 0.5]
    assert result.errors == ["Invocation failed (exit 3)."]
    assert result.runner.stderr.strip() == "agent crashed"
    assert cache.get("echo") is None


def test_auth_failure_trips_breaker_until_probe_clears(
    git_repo: Path,
    make_settings,
    sleeps,
) -> None:
    executor, cache = _executor(make_settings("--mode", "auth", max_attempts=3), sleeps)

    first = executor.run(_task(git_repo))

    assert first.attempts == 1
    assert sleeps == []
    assert first.errors[0].startswith("Login required for provider echo.")
    assert first.errors[1] == (
        "Provider echo marked unavailable. Run providers_health after resolving the issue."
    )
    record = cache.get("echo")
    assert record.available is False
    assert record.source is HealthSource.RUNTIME

    blocked = executor.run(_task(git_repo))

    assert blocked.ok is False
    assert blocked.runner is None
    assert blocked.invocation.command == ""
    assert blocked.errors == [
        f'Provider echo requires login. Run "{sys.executable} login", then run providers_health.',
    ]

    cache.record_probe(ProviderHealthStatus(provider_id="echo", ok=True))
    retried = executor.run(_task(git_repo))

    assert retried.runner is not None


def test_rate_limit_trips_breaker_without_retry(git_repo: Path, make_settings, sleeps) -> None:
    executor, cache = _executor(make_settings("--mode", "rate-limit", max_attempts=3), sleeps)

    result = executor.run(_task(git_repo))

    assert result.attempts == 1
    assert result.errors[0] == "Provider echo rate limited. Wait and retry."
    assert cache.get("echo").reason == "Rate limit detected. Retry later."


def test_timeouts_trip_breaker_after_all_attempts(git_repo: Path, make_settings, sleeps) -> None:
    settings = make_settings("--mode", "hang", max_attempts=2, timeout_seconds=1)
    executor, cache = _executor(settings, sleeps)

    result = executor.run(_task(git_repo))

    assert result.attempts == 2
    assert result.runner.timed_out is True
    assert result.errors[0] == "Invocation timed out after 1s of inactivity."
    assert cache.get("echo").reason == "Timeout after 1s of inactivity."


def test_dry_run_never_spawns(git_repo: Path, make_settings, sleeps) -> None:
    settings = make_settings(binary="no-such-binary-for-tests")
    cache = ProviderHealthCache()
    cache.mark_unavailable("echo", "binary not found in PATH")
    executor, _ = _executor(settings, sleeps, cache)

    result = executor.run(_task(git_repo, dry_run=True, test_command="pytest"))

    assert result.ok is True
    assert result.runner is None
    assert result.attempts == 0
    assert result.invocation.command == "no-such-binary-for-tests"
    assert result.result.logs == ["dryRun enabled: no CLI executed"]
    assert result.test.skipped is True
    assert result.test.note == "dryRun enabled"
    assert result.test.command == "pytest"


def test_pre_check_failures_abort_before_spawning(git_repo: Path, make_settings, sleeps) -> None:
    executor, _ = _executor(make_settings(), sleeps)

    result = executor.run(
        _task(git_repo, provider="missing", instructions=" ", allowlist=["../x"]),
    )

    assert result.ok is False
    assert result.runner is None
    assert result.invocation.command == ""
    assert result.errors == [
        "Missing instructions.",
        "Allowlist path escapes workspace: ../x",
        "Unknown provider: missing",
    ]
    assert [issue.code for issue in result.policy_issues] == [
        "POLICY_INSTRUCTIONS_REQUIRED",
        "POLICY_ALLOWLIST_ESCAPE",
    ]


def test_snapshot_failure_outside_repository(
    tmp_path: Path,
    git_repo: Path,
    make_settings,
    sleeps,
) -> None:
    outside = tmp_path / "plain"
    outside.mkdir()
    executor, _ = _executor(make_settings(), sleeps)

    result = executor.run(_task(outside))

    assert result.ok is False
    assert result.runner is None
    assert result.errors[0].startswith("git status failed")


def test_start_failure_is_final_and_skips_tests(git_repo: Path, make_settings, sleeps) -> None:
    executor, cache = _executor(make_settings(binary="no-such-binary-for-tests"), sleeps)

    result = executor.run(_task(git_repo, test_command="true"))

    assert result.ok is False
    assert result.attempts == 1
    assert result.errors[0].startswith("Failed to start no-such-binary-for-tests")
    assert result.test.skipped is True
    assert result.test.note == "Invocation failed; tests skipped."
    assert result.test.exit_code == -1
    assert cache.get("echo") is None


def test_verification_command_result(git_repo: Path, make_settings, sleeps) -> None:
    executor, _ = _executor(make_settings("--touch", "created.txt"), sleeps)

    passed = executor.run(_task(git_repo, test_command="test -f created.txt"))
    failed = executor.run(_task(git_repo, test_command="exit 4"))

    assert passed.ok is True, passed.errors
    assert passed.test.ok is True
    assert passed.test.skipped is False
    assert failed.ok is False
    assert failed.test.exit_code == 4
    assert failed.errors == ["Tests failed (exit 4)."]


def test_allowlist_warnings_use_post_snapshot(git_repo: Path, make_settings, sleeps) -> None:
    settings = make_settings("--touch", "allowed.txt", "--touch", "other.txt")
    executor, _ = _executor(settings, sleeps)

    result = executor.run(_task(git_repo, allowlist=["allowed.txt"]))

    assert result.ok is True
    assert result.git.baseline.paths == []
    assert set(result.git.post.paths) == {"allowed.txt", "other.txt"}
    assert result.policy_warnings == ["Allowlist violation: other.txt"]
    assert [issue.code for issue in result.policy_issues] == ["POLICY_ALLOWLIST_VIOLATION"]


def test_allowlist_skipped_on_dirty_baseline(git_repo: Path, make_settings, sleeps) -> None:
    (git_repo / "README.md").write_text("dirty\n", "utf-8")
    executor, _ = _executor(make_settings("--touch", "other.txt"), sleeps)

    result = executor.run(_task(git_repo, allowlist=["allowed.txt"]))

    assert result.policy_warnings == [
        "Allowlist check skipped because worktree was dirty at task start.",
    ]


def test_audit_record_and_run_log_are_written(git_repo: Path, make_settings, sleeps) -> None:
    executor, _ = _executor(make_settings("--mode", "fail", audit=True, logs=True), sleeps)

    result = executor.run(_task(git_repo, task_id="audited"))

    audit_files = list((git_repo / ".task-conduit" / "audit").glob("*__echo__audited.json"))
    assert len(audit_files) == 1
    record = json.loads(audit_files[0].read_text("utf-8"))
    assert record["task"]["taskId"] == "audited"
    assert record["result"]["ok"] is False
    assert record["result"]["attempts"] == 2
    assert "timestamp" in record

    log_path = Path(result.execution_log.path)
    assert log_path.parent == (git_repo / ".task-conduit" / "logs").resolve()
    text = log_path.read_text("utf-8")
    assert text.startswith("# Run log\nTask: audited\nProvider: echo\n")
    assert "## Attempt 1" in text
    assert "## Attempt 2" in text
    assert "[stderr] agent crashed" in text
    assert "Retrying in 0.5s..." in text


def test_task_can_disable_audit(git_repo: Path, make_settings, sleeps) -> None:
    executor, _ = _executor(make_settings(audit=True), sleeps)

    executor.run(_task(git_repo, audit_enabled=False))

    assert not (git_repo / ".task-conduit" / "audit").exists()


def test_unspawnable_environment_yields_failed_result(
    git_repo: Path,
    make_settings,
    sleeps,
) -> None:
    executor, cache = _executor(make_settings(audit=True), sleeps)

    result = executor.run(_task(git_repo, task_id="bad-env", env={"A=B": "1"}))

    assert result.ok is False
    assert result.attempts == 1
    assert result.runner is None
    assert result.errors[0].startswith(f"Failed to start {sys.executable}")
    assert result.test.note == "No testCommand provided."
    assert cache.get("echo") is None
    assert list((git_repo / ".task-conduit" / "audit").glob("*__bad-env.json"))


def test_unspawnable_test_command_yields_failed_result(
    git_repo: Path,
    make_settings,
    sleeps,
) -> None:
    executor, _ = _executor(make_settings(), sleeps)

    result = executor.run(_task(git_repo, test_command="true\x00"))

    assert result.ok is False
    assert result.runner.exit_code == 0
    assert result.test.ok is False
    assert result.test.exit_code == -1
    assert result.test.note == "Failed to execute test command."
    assert result.errors[0].startswith("Failed to start true")
