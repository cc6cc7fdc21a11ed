"""Domain models for task requests, attempts, snapshots and execution results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class FailureCategory(str, Enum):
    """Normalized attempt failure categories used by retry policy."""

    TIMEOUT = "timeout"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    EXIT = "exit"
    UNKNOWN = "unknown"


class HealthSource(str, Enum):
    """Origin of a cached provider health record."""

    PROBE = "probe"
    RUNTIME = "runtime"


class PolicyPhase(str, Enum):
    PRE = "pre"
    POST = "post"


class PolicySeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(slots=True)
class TaskRequest:
    """Validated `run_task` arguments."""

    provider: str
    instructions: str
    task_id: str | None = None
    allowlist: list[str] = field(default_factory=list)
    cwd: str | None = None
    dry_run: bool = False
    env: dict[str, str] = field(default_factory=dict)
    test_command: str | None = None
    audit_enabled: bool | None = None
    logs_enabled: bool | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "provider": self.provider,
            "instructions": self.instructions,
        }
        if self.task_id is not None:
            payload["taskId"] = self.task_id
        if self.allowlist:
            payload["allowlist"] = list(self.allowlist)
        if self.cwd is not None:
            payload["cwd"] = self.cwd
        if self.dry_run:
            payload["dryRun"] = True
        if self.env:
            payload["env"] = dict(self.env)
        if self.test_command is not None:
            payload["testCommand"] = self.test_command
        if self.audit_enabled is not None:
            payload["auditEnabled"] = self.audit_enabled
        if self.logs_enabled is not None:
            payload["logsEnabled"] = self.logs_enabled
        return payload


@dataclass(frozen=True, slots=True)
class Invocation:
    """Resolved provider command line for one attempt loop."""

    command: str
    args: tuple[str, ...]
    cwd: str | None = None
    env: dict[str, str] | None = None
    input_text: str | None = None


@dataclass(slots=True)
class InvocationInfo:
    """Invocation metadata attached to an execution result."""

    command: str = ""
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    exit_code: int | None = None
    duration_ms: int | None = None

    @classmethod
    def from_invocation(cls, invocation: Invocation) -> InvocationInfo:
        return cls(command=invocation.command, args=list(invocation.args), cwd=invocation.cwd)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"cmd": self.command, "args": list(self.args)}
        if self.cwd is not None:
            payload["cwd"] = self.cwd
        if self.exit_code is not None:
            payload["exitCode"] = self.exit_code
        if self.duration_ms is not None:
            payload["durationMs"] = self.duration_ms
        return payload


@dataclass(slots=True)
class AttemptOutcome:
    """Captured result of one process run."""

    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int
    timed_out: bool = False
    signal: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exitCode": self.exit_code,
            "durationMs": self.duration_ms,
            "timedOut": self.timed_out,
            "signal": self.signal,
        }


@dataclass(slots=True)
class FailureClassification:
    """Classified attempt failure with retryability hint."""

    category: FailureCategory
    message: str
    log_message: str
    retryable: bool
    matched_pattern: str | None = None


@dataclass(slots=True)
class ProviderHealthStatus:
    """Outcome of one provider health probe."""

    provider_id: str
    ok: bool
    reason: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.provider_id, "ok": self.ok}
        if self.reason is not None:
            payload["reason"] = self.reason
        return payload


@dataclass(slots=True)
class ProviderHealthRecord:
    """Cached availability of one provider."""

    provider_id: str
    available: bool
    reason: str | None
    checked_at: datetime
    source: HealthSource

    def to_status(self) -> ProviderHealthStatus:
        return ProviderHealthStatus(
            provider_id=self.provider_id,
            ok=self.available,
            reason=self.reason,
        )


@dataclass(slots=True)
class GitSnapshot:
    """Repository status and diff captured at one point in time."""

    status: str = ""
    diff: str = ""
    paths: list[str] = field(default_factory=list)
    binary_paths: list[str] | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "diff": self.diff,
            "paths": list(self.paths),
        }
        if self.binary_paths is not None:
            payload["binaryPaths"] = list(self.binary_paths)
        return payload


@dataclass(slots=True)
class GitSnapshotPair:
    baseline: GitSnapshot
    post: GitSnapshot

    def to_payload(self) -> dict[str, Any]:
        return {"baseline": self.baseline.to_payload(), "post": self.post.to_payload()}


@dataclass(slots=True)
class ProviderTestEntry:
    name: str
    ok: bool
    output: str | None = None


@dataclass(slots=True)
class ProviderResult:
    """Structured output parsed from a provider's stdout."""

    diff: str | None = None
    logs: list[str] | None = None
    tests: list[ProviderTestEntry] | None = None
    raw: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.diff is not None:
            payload["diff"] = self.diff
        if self.logs is not None:
            payload["logs"] = list(self.logs)
        if self.tests is not None:
            payload["tests"] = [
                {"name": entry.name, "ok": entry.ok, "output": entry.output}
                for entry in self.tests
            ]
        if self.raw is not None:
            payload["raw"] = self.raw
        return payload


@dataclass(slots=True)
class VerificationResult:
    """Outcome of the caller-supplied test command."""

    command: str
    ok: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    skipped: bool = False
    note: str | None = None

    @classmethod
    def skipped_with(cls, *, command: str, ok: bool, note: str) -> VerificationResult:
        return cls(
            command=command,
            ok=ok,
            exit_code=0 if ok else -1,
            skipped=True,
            note=note,
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "command": self.command,
            "ok": self.ok,
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "durationMs": self.duration_ms,
        }
        if self.skipped:
            payload["skipped"] = True
        if self.note is not None:
            payload["note"] = self.note
        return payload


@dataclass(slots=True)
class PolicyIssue:
    code: str
    message: str
    phase: PolicyPhase
    severity: PolicySeverity

    def to_payload(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "phase": self.phase.value,
            "severity": self.severity.value,
        }


@dataclass(slots=True)
class PolicyDecision:
    """Accumulated policy findings for one checkpoint."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    issues: list[PolicyIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(slots=True)
class ExecutionLog:
    path: str
    format: str = "markdown"

    def to_payload(self) -> dict[str, Any]:
        return {"path": self.path, "format": self.format}


@dataclass(slots=True)
class ExecutionResult:
    """Aggregate record returned for one task."""

    ok: bool
    task_id: str
    provider: str
    started_at: str
    prompt: str
    git: GitSnapshotPair
    invocation: InvocationInfo
    execution_log: ExecutionLog | None = None
    runner: AttemptOutcome | None = None
    test: VerificationResult | None = None
    result: ProviderResult | None = None
    policy_issues: list[PolicyIssue] = field(default_factory=list)
    policy_warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    attempts: int = 0

    def to_payload(self) -> dict[str, Any]:
        """Serialize the result for a response frame or audit record."""

        payload: dict[str, Any] = {
            "ok": self.ok,
            "taskId": self.task_id,
            "provider": self.provider,
            "startedAt": self.started_at,
            "prompt": self.prompt,
            "git": self.git.to_payload(),
            "invocation": self.invocation.to_payload(),
            "attempts": self.attempts,
            "policyWarnings": list(self.policy_warnings),
            "errors": list(self.errors),
        }
        if self.execution_log is not None:
            payload["executionLog"] = self.execution_log.to_payload()
        if self.runner is not None:
            payload["runner"] = self.runner.to_payload()
        if self.test is not None:
            payload["test"] = self.test.to_payload()
        if self.result is not None:
            payload["result"] = self.result.to_payload()
        if self.policy_issues:
            payload["policyIssues"] = [issue.to_payload() for issue in self.policy_issues]
        return payload
