"""Pre- and post-execution policy checks."""

from __future__ import annotations

import os

from task_conduit.config import PolicySettings
from task_conduit.models import (
    GitSnapshotPair,
    PolicyDecision,
    PolicyIssue,
    PolicyPhase,
    PolicySeverity,
    TaskRequest,
)


def pre_check(task: TaskRequest, policy: PolicySettings) -> PolicyDecision:
    """Validate a task before anything is spawned."""

    decision = PolicyDecision()

    def add_error(code: str, message: str) -> None:
        decision.errors.append(message)
        decision.issues.append(
            PolicyIssue(
                code=code,
                message=message,
                phase=PolicyPhase.PRE,
                severity=PolicySeverity.ERROR,
            ),
        )

    if not task.instructions or not task.instructions.strip():
        add_error("POLICY_INSTRUCTIONS_REQUIRED", "Missing instructions.")

    if policy.require_test_command and task.test_command is None:
        add_error("POLICY_TEST_COMMAND_REQUIRED", "testCommand is required by policy.")

    for entry in task.allowlist:
        if os.path.isabs(entry):
            add_error("POLICY_ALLOWLIST_ABSOLUTE", f"Allowlist path must be relative: {entry}")
        normalized = os.path.normpath(entry)
        if normalized == os.pardir or normalized.startswith(os.pardir + os.sep):
            add_error("POLICY_ALLOWLIST_ESCAPE", f"Allowlist path escapes workspace: {entry}")

    if task.test_command is not None and not task.test_command.strip():
        add_error("POLICY_TEST_COMMAND_EMPTY", "testCommand must be a non-empty string.")

    return decision


def post_check(task: TaskRequest, snapshots: GitSnapshotPair) -> PolicyDecision:
    """Compare touched paths against the task allowlist."""

    decision = PolicyDecision()
    if not task.allowlist:
        return decision

    def add_warning(code: str, message: str) -> None:
        decision.warnings.append(message)
        decision.issues.append(
            PolicyIssue(
                code=code,
                message=message,
                phase=PolicyPhase.POST,
                severity=PolicySeverity.WARNING,
            ),
        )

    if snapshots.baseline.paths:
        add_warning(
            "POLICY_ALLOWLIST_DIRTY_BASELINE",
            "Allowlist check skipped because worktree was dirty at task start.",
        )
        return decision

    allowed = set(task.allowlist)
    touched = snapshots.post.paths or extract_diff_paths(snapshots.post.diff)
    for path in touched:
        if path not in allowed:
            add_warning("POLICY_ALLOWLIST_VIOLATION", f"Allowlist violation: {path}")
    return decision


def extract_diff_paths(diff: str) -> list[str]:
    """Destination paths named by `diff --git a/x b/y` headers, in order."""

    paths: dict[str, None] = {}
    for line in diff.split("\n"):
        if not line.startswith("diff --git "):
            continue
        parts = line.split(" ")
        if len(parts) >= 4:
            paths[parts[3].removeprefix("b/")] = None
    return list(paths)
