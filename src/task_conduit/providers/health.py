"""Lightweight availability probes for provider CLIs."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any

from task_conduit.config import ProviderSettings, Settings
from task_conduit.models import ProviderHealthStatus
from task_conduit.runner import ProcessStartError, run_command

logger = logging.getLogger(__name__)

_LINE_SPLIT_RE = re.compile(r"\r?\n")


@dataclass(slots=True)
class _ProbeRun:
    ok: bool
    stdout: str = ""
    exit_code: int = 0
    reason: str | None = None


def check_provider_health(provider_id: str, settings: ProviderSettings) -> ProviderHealthStatus:
    """Run the version probe, then the auth probe when one is configured."""

    health_check = settings.health_check
    success_codes = set(health_check.success_exit_codes)
    cwd = settings.cwd or os.getcwd()

    if health_check.version_args:
        probe = _safe_run(settings, health_check.version_args, cwd, health_check.timeout_seconds)
        if not probe.ok:
            return ProviderHealthStatus(provider_id=provider_id, ok=False, reason=probe.reason)
        if probe.exit_code not in success_codes:
            return ProviderHealthStatus(
                provider_id=provider_id,
                ok=False,
                reason=f"version check failed (exit {probe.exit_code})",
            )

    if health_check.auth_args:
        probe = _safe_run(settings, health_check.auth_args, cwd, health_check.timeout_seconds)
        if not probe.ok:
            return ProviderHealthStatus(provider_id=provider_id, ok=False, reason=probe.reason)
        if probe.exit_code not in success_codes:
            return ProviderHealthStatus(
                provider_id=provider_id,
                ok=False,
                reason=f"auth check failed (exit {probe.exit_code})",
            )
        if health_check.auth_output_mode != "text":
            message = extract_auth_error(probe.stdout, health_check.auth_output_mode)
            if message:
                return ProviderHealthStatus(provider_id=provider_id, ok=False, reason=message)

    return ProviderHealthStatus(provider_id=provider_id, ok=True)


def check_providers_health(
    settings: Settings,
    provider_ids: list[str] | None = None,
) -> list[ProviderHealthStatus]:
    """Probe the requested providers (all configured ones by default)."""

    ids = provider_ids if provider_ids else list(settings.providers)
    statuses: list[ProviderHealthStatus] = []
    for provider_id in ids:
        provider = settings.providers.get(provider_id)
        if provider is None:
            statuses.append(
                ProviderHealthStatus(provider_id=provider_id, ok=False, reason="unknown provider"),
            )
            continue
        status = check_provider_health(provider_id, provider)
        logger.info(
            "Provider %s health: %s%s",
            provider_id,
            "ok" if status.ok else "unavailable",
            f" ({status.reason})" if status.reason else "",
        )
        statuses.append(status)
    return statuses


def extract_auth_error(stdout: str, mode: str) -> str | None:
    """Find an error message in JSON (`json`) or JSON-lines (`jsonl`) probe output."""

    if mode == "json":
        parsed = _parse_object(stdout.strip())
        return _error_message(parsed) if parsed is not None else None

    for line in _LINE_SPLIT_RE.split(stdout):
        parsed = _parse_object(line)
        if parsed is None:
            continue
        message = _error_message(parsed)
        if message:
            return message
    return None


def _safe_run(
    settings: ProviderSettings,
    args: tuple[str, ...],
    cwd: str,
    timeout_seconds: float,
) -> _ProbeRun:
    try:
        outcome = run_command(
            settings.binary,
            args,
            cwd=cwd,
            env=settings.env or None,
            timeout_seconds=timeout_seconds,
        )
    except ProcessStartError as error:
        if isinstance(error.cause, FileNotFoundError):
            return _ProbeRun(ok=False, reason="binary not found in PATH")
        return _ProbeRun(ok=False, reason=str(error.cause) or "health check failed")
    if outcome.timed_out:
        return _ProbeRun(
            ok=False,
            reason="health check timed out",
            stdout=outcome.stdout,
            exit_code=outcome.exit_code,
        )
    return _ProbeRun(ok=True, stdout=outcome.stdout, exit_code=outcome.exit_code)


def _parse_object(text: str) -> dict[str, Any] | None:
    if not text.strip():
        return None
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _error_message(parsed: dict[str, Any]) -> str | None:
    error = parsed.get("error")
    if not error:
        if parsed.get("type") == "error" and isinstance(parsed.get("message"), str):
            return parsed["message"]
        return None
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        if isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error.get("type"), str):
            return error["type"]
    return "auth check failed"
