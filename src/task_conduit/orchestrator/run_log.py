"""Human-readable markdown log of one task run."""

from __future__ import annotations

import logging
from pathlib import Path

from task_conduit.models import AttemptOutcome, ExecutionLog
from task_conduit.orchestrator.audit import build_run_basename

logger = logging.getLogger(__name__)


class ExecutionLogWriter:
    """Append-only markdown log; write failures are logged and ignored."""

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def create(  # noqa: PLR0913
        cls,
        *,
        log_dir: Path,
        task_id: str,
        provider_id: str,
        cwd: str,
        started_at: str,
        timeout_seconds: float,
        max_attempts: int,
    ) -> ExecutionLogWriter | None:
        path = log_dir / f"{build_run_basename(provider_id, task_id, started_at)}.md"
        header = "\n".join(
            [
                "# Run log",
                f"Task: {task_id}",
                f"Provider: {provider_id}",
                f"Cwd: {cwd}",
                f"Started: {started_at}",
                f"Idle timeout: {timeout_seconds:g}s",
                f"Max attempts: {max_attempts}",
                "",
            ],
        )
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(f"{header}\n", "utf-8")
        except OSError as error:
            logger.warning("Cannot create run log %s: %s", path, error)
            return None
        return cls(path)

    def describe(self) -> ExecutionLog:
        return ExecutionLog(path=str(self.path))

    def append(self, text: str) -> None:
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(text)
        except OSError as error:
            logger.warning("Cannot append to run log %s: %s", self.path, error)

    def attempt_started(self, attempt: int) -> None:
        self.append(f"\n## Attempt {attempt}\n")

    def attempt_summary(self, outcome: AttemptOutcome) -> None:
        lines = [
            f"- Exit code: {outcome.exit_code}",
            f"- Duration: {outcome.duration_ms}ms",
            f"- Timed out: {'yes' if outcome.timed_out else 'no'}",
        ]
        if outcome.signal:
            lines.append(f"- Signal: {outcome.signal}")
        self.append("\n".join(lines) + "\n")
