"""Controllers for task-conduit CLI commands."""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

from task_conduit.config import ConfigError, Settings
from task_conduit.models import TaskRequest
from task_conduit.orchestrator import TaskExecutor
from task_conduit.providers.health import check_providers_health
from task_conduit.providers.health_cache import ProviderHealthCache
from task_conduit.server import ConduitServer

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class ServeCommand:
    """CLI input for the framed stdio server."""

    config_path: Path | None
    log_level: str | None
    max_workers: int = 4


@dataclass(slots=True)
class RunTaskCommand:
    """CLI input for a one-shot task run."""

    config_path: Path | None
    provider: str
    instructions: str
    allowlist: tuple[str, ...] = ()
    cwd: Path | None = None
    dry_run: bool = False
    test_command: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    task_id: str | None = None


@dataclass(slots=True)
class HealthCommand:
    config_path: Path | None
    providers: tuple[str, ...] = ()


@dataclass(slots=True)
class CommandResult:
    """Report to render in CLI."""

    lines: list[str]
    success: bool


class ConduitCliController:
    """Coordinates server, one-shot run, and health CLI operations."""

    def serve(self, command: ServeCommand, *, reader: BinaryIO, writer: BinaryIO) -> int:
        settings = Settings.from_env(command.config_path)
        configure_logging(command.log_level or settings.log_level)
        server = ConduitServer(settings, max_workers=command.max_workers)
        return server.serve(reader, writer)

    def run_task(self, command: RunTaskCommand) -> CommandResult:
        try:
            settings = Settings.from_env(command.config_path)
        except ConfigError as error:
            return CommandResult(lines=[str(error)], success=False)

        task = TaskRequest(
            provider=command.provider,
            instructions=command.instructions,
            task_id=command.task_id,
            allowlist=list(command.allowlist),
            cwd=str(command.cwd) if command.cwd is not None else None,
            dry_run=command.dry_run,
            env=dict(command.env),
            test_command=command.test_command,
        )
        result = TaskExecutor(settings, ProviderHealthCache()).run(task)
        return CommandResult(
            lines=[json.dumps(result.to_payload(), indent=2, ensure_ascii=False)],
            success=result.ok,
        )

    def health(self, command: HealthCommand) -> CommandResult:
        try:
            settings = Settings.from_env(command.config_path)
        except ConfigError as error:
            return CommandResult(lines=[str(error)], success=False)

        statuses = check_providers_health(settings, list(command.providers) or None)
        lines = ["Provider health:"]
        for status in statuses:
            line = f"  provider={status.provider_id} ok={'yes' if status.ok else 'no'}"
            if status.reason:
                line += f" reason={status.reason}"
            lines.append(line)
        return CommandResult(lines=lines, success=all(status.ok for status in statuses))


def configure_logging(level: str) -> None:
    """Send log records to stderr; stdout carries protocol frames."""

    logging.basicConfig(
        level=level.upper(),
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
