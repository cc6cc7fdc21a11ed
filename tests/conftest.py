"""Shared test fixtures."""

from __future__ import annotations

import shutil
import subprocess
import sys
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

import pytest

from task_conduit.config import (
    AuditSettings,
    HealthCheckSettings,
    LogsSettings,
    ProviderSettings,
    RetrySettings,
    RunnerSettings,
    Settings,
)

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
ECHO_AGENT_ARGS = ("-m", "task_conduit.providers.echo_agent")


def echo_provider_settings(
    *agent_args: str,
    input_mode: str = "stdin",
    **overrides,
) -> ProviderSettings:
    """Provider settings that run the bundled echo agent with the current interpreter."""

    settings = ProviderSettings(
        binary=sys.executable,
        input_mode=input_mode,
        args=(*ECHO_AGENT_ARGS, *agent_args),
        env={"PYTHONPATH": str(SRC_DIR)},
        health_check=HealthCheckSettings(version_args=("--version",)),
    )
    return replace(settings, **overrides)


@pytest.fixture()
def make_settings() -> Callable[..., Settings]:
    """Build settings with an `echo` provider and no retry delay."""

    def _make(
        *agent_args: str,
        max_attempts: int = 2,
        timeout_seconds: float = 20.0,
        audit: bool = False,
        logs: bool = False,
        **provider_overrides,
    ) -> Settings:
        return Settings(
            runner=RunnerSettings(
                timeout_seconds=timeout_seconds,
                retry=RetrySettings(max_attempts=max_attempts, delay_seconds=0.5),
            ),
            providers={"echo": echo_provider_settings(*agent_args, **provider_overrides)},
            audit=AuditSettings(enabled=audit),
            logs=LogsSettings(enabled=logs),
        )

    return _make


def _git(cwd: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)  # noqa: S603, S607


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """A git repository with one committed file and an ignored `.task-conduit/`."""

    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")
    _git(repo, "config", "user.email", "tests@example.com")
    _git(repo, "config", "user.name", "Tests")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("hello\n", "utf-8")
    (repo / ".gitignore").write_text(".task-conduit/\n", "utf-8")
    _git(repo, "add", ".")
    _git(repo, "commit", "-q", "-m", "init")
    return repo


@pytest.fixture()
def git() -> Callable[..., None]:
    return _git
