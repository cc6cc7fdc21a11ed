"""Prompt rendering for delegated coding tasks."""

from __future__ import annotations

import os

from task_conduit.models import TaskRequest


def render_prompt(task: TaskRequest) -> str:
    """Wrap task instructions with the working directory, constraints and output contract."""

    cwd = os.path.abspath(task.cwd) if task.cwd else os.getcwd()
    allowlist_block = (
        "\n".join(f"- {entry}" for entry in task.allowlist)
        if task.allowlist
        else "- (none provided)"
    )
    test_line = (
        f"- Test command: {task.test_command}"
        if task.test_command
        else "- Test command: (none provided; skip)"
    )

    return "\n".join(
        [
            "## 1.0 SYSTEM DIRECTIVE",
            "You are a delegated coding agent working directly in a local repository.",
            "Follow the task precisely and keep changes minimal.",
            "CRITICAL: Validate every command. If a command fails, fix it or report why.",
            "Do not commit, push, or modify git history.",
            "",
            "## 2.0 TASK",
            task.instructions.strip() or "(missing instructions)",
            "",
            "## 3.0 CONSTRAINTS",
            f"- Working directory: {cwd}",
            test_line,
            "- Avoid unrelated refactors or formatting-only changes.",
            "- Allowlist (advisory):",
            allowlist_block,
            "",
            "## 3.1 QUALITY BAR",
            "- Preserve existing project patterns and style.",
            "- Keep the diff minimal and focused on the task.",
            "- Do not introduce new dependencies unless required; explain if you do.",
            "",
            "## 4.0 EXECUTION PROTOCOL",
            "1) Inspect relevant files directly from disk.",
            "2) Implement the required changes.",
            "3) If a test command is provided, run it and fix failures.",
            "   If failures are clearly unrelated to your changes, explain why.",
            "4) Summarize changes and list tests run (or state they were skipped).",
            "",
            "## 5.0 OUTPUT",
            "Return a concise summary and the tests executed.",
        ],
    )
