"""Audit records and run file naming."""

from __future__ import annotations

import json
import logging
import os
import re
import secrets
from datetime import UTC, datetime
from pathlib import Path

from task_conduit.config import Settings
from task_conduit.models import ExecutionResult, TaskRequest

logger = logging.getLogger(__name__)

_UNSAFE_SEGMENT_RE = re.compile(r"[^A-Za-z0-9._-]")


def utc_timestamp(moment: datetime | None = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a `Z` suffix."""

    moment = moment or datetime.now(UTC)
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def make_task_id(moment: datetime | None = None) -> str:
    stamp = re.sub(r"[:.]", "-", utc_timestamp(moment))
    return f"task-{stamp}-{secrets.token_hex(3)}"


def build_run_basename(provider: str, task_id: str, started_at: str) -> str:
    """File stem shared by the audit record and the run log of one task."""

    safe_provider = _sanitize_segment(provider or "provider")
    safe_task_id = _sanitize_segment(task_id or "task")
    safe_timestamp = _sanitize_segment(re.sub(r"[:.]", "-", started_at))
    return f"{safe_timestamp}__{safe_provider}__{safe_task_id}"


def audit_enabled(settings: Settings, task: TaskRequest) -> bool:
    return settings.audit.enabled and task.audit_enabled is not False


def write_audit(settings: Settings, task: TaskRequest, result: ExecutionResult) -> Path | None:
    """Persist `{task, result, timestamp}` as JSON under the audit directory.

    Returns the written path, or None when auditing is off or the write failed.
    """

    if not audit_enabled(settings, task):
        return None

    base_dir = task.cwd or os.getcwd()
    directory = Path(base_dir, settings.audit.dir).resolve()
    basename = build_run_basename(result.provider, result.task_id, result.started_at)
    path = directory / f"{basename}.json"
    payload = {
        "task": task.to_payload(),
        "result": result.to_payload(),
        "timestamp": utc_timestamp(),
    }
    try:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), "utf-8")
    except OSError as error:
        logger.warning("Failed to write audit record %s: %s", path, error)
        return None
    return path


def _sanitize_segment(value: str) -> str:
    return _UNSAFE_SEGMENT_RE.sub("_", value)
