"""Git working-tree snapshots used as before/after state for policy checks."""

from __future__ import annotations

import re
from pathlib import Path

from task_conduit.models import AttemptOutcome, GitSnapshot
from task_conduit.runner import ProcessStartError, run_command

GIT_TIMEOUT_SECONDS = 20.0

_LINE_SPLIT_RE = re.compile(r"\r?\n")
_BRACE_RENAME_RE = re.compile(r"\{[^}]*=>\s*([^}]+)\}")


class SnapshotError(RuntimeError):
    """A git command needed for a snapshot failed."""


def capture_git_snapshot(cwd: str | Path, *, track_binary_paths: bool = False) -> GitSnapshot:
    """Capture status, binary-free diff and touched paths of the tree at `cwd`."""

    status = _run_git("git status", ["status", "--porcelain=v1"], cwd)
    diff = _run_git("git diff", ["diff", "--no-color"], cwd)
    binary_paths: list[str] | None = None
    if track_binary_paths:
        numstat = _run_git("git diff --numstat", ["diff", "--numstat"], cwd)
        binary_paths = parse_binary_paths(numstat.stdout)

    return GitSnapshot(
        status=status.stdout,
        diff=strip_binary_diff(diff.stdout),
        paths=parse_status_paths(status.stdout),
        binary_paths=binary_paths,
    )


def parse_status_paths(output: str) -> list[str]:
    """Extract touched paths from `git status --porcelain=v1` output."""

    paths: list[str] = []
    for line in _LINE_SPLIT_RE.split(output):
        if len(line) < 4:
            continue
        entry = line[3:].strip()
        if not entry:
            continue
        if "->" in entry:
            entry = entry.rsplit("->", 1)[1].strip()
        paths.append(entry)
    return paths


def strip_binary_diff(output: str) -> str:
    """Drop per-file diff blocks that describe binary content."""

    kept: list[str] = []
    block: list[str] = []
    in_block = False
    is_binary = False

    for line in _LINE_SPLIT_RE.split(output):
        if line.startswith("diff --git "):
            if in_block and not is_binary:
                kept.extend(block)
            in_block = True
            is_binary = False
            block = [line]
            continue
        if not in_block:
            kept.append(line)
            continue
        block.append(line)
        if line.startswith(("Binary files ", "GIT binary patch")):
            is_binary = True

    if block and not is_binary:
        kept.extend(block)
    return "\n".join(kept)


def parse_binary_paths(output: str) -> list[str]:
    """Return destination paths of `git diff --numstat` rows marked `-\t-`."""

    paths: dict[str, None] = {}
    for line in _LINE_SPLIT_RE.split(output):
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        added, deleted = parts[0], parts[1]
        if added != "-" or deleted != "-":
            continue
        raw_path = "\t".join(parts[2:]).strip()
        if raw_path:
            paths[normalize_rename_path(raw_path)] = None
    return list(paths)


def normalize_rename_path(raw_path: str) -> str:
    if "{" in raw_path and "=>" in raw_path:
        return _BRACE_RENAME_RE.sub(r"\1", raw_path).strip()
    if "=>" in raw_path:
        return raw_path.rsplit("=>", 1)[1].strip()
    return raw_path.strip()


def _run_git(label: str, args: list[str], cwd: str | Path) -> AttemptOutcome:
    try:
        outcome = run_command("git", args, cwd=cwd, timeout_seconds=GIT_TIMEOUT_SECONDS)
    except ProcessStartError as error:
        raise SnapshotError(f"{label} failed: {error.cause}") from error
    if outcome.exit_code != 0 or outcome.timed_out:
        details = outcome.stderr.strip() or outcome.stdout.strip()
        raise SnapshotError(f"{label} failed: {details}" if details else f"{label} failed.")
    return outcome
