"""Runtime configuration for the task-conduit server."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from task_conduit import __version__

DEFAULT_CONFIG_FILENAME = "task-conduit.config.json"
CONFIG_PATH_ENV = "TASK_CONDUIT_CONFIG"
SUPPORTED_INPUT_MODES = ("stdin", "arg")
SUPPORTED_AUTH_OUTPUT_MODES = ("text", "json", "jsonl")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(ValueError):
    """Raised when the configuration file or environment is invalid."""


@dataclass(slots=True)
class ServerSettings:
    """Identity advertised during protocol initialization."""

    name: str = "task-conduit"
    version: str = __version__
    protocol_version: str = "2025-11-25"


@dataclass(slots=True)
class PolicySettings:
    """Pre/post execution policy switches."""

    track_binary_paths: bool = False
    require_test_command: bool = False


@dataclass(slots=True)
class RetrySettings:
    max_attempts: int = 2
    delay_seconds: float = 2.0


@dataclass(slots=True)
class RunnerSettings:
    """Process runtime defaults shared by all providers."""

    timeout_seconds: float = 120.0
    retry: RetrySettings = field(default_factory=RetrySettings)


@dataclass(slots=True)
class HealthCheckSettings:
    """Health probe descriptor for one provider."""

    version_args: tuple[str, ...] = ("--version",)
    auth_args: tuple[str, ...] = ()
    auth_output_mode: str = "text"
    timeout_seconds: float = 15.0
    success_exit_codes: tuple[int, ...] = (0,)


@dataclass(slots=True)
class ProviderSettings:
    """Command-line conventions for one provider."""

    binary: str
    input_mode: str = "stdin"
    args: tuple[str, ...] = ()
    type: str | None = None
    input_flag: str | None = None
    model_flag: str | None = None
    model: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    timeout_seconds: float | None = None
    health_check: HealthCheckSettings = field(default_factory=HealthCheckSettings)


@dataclass(slots=True)
class AuditSettings:
    enabled: bool = True
    dir: str = ".task-conduit/audit"


@dataclass(slots=True)
class LogsSettings:
    enabled: bool = True
    dir: str = ".task-conduit/logs"


def _default_providers() -> dict[str, ProviderSettings]:
    return {
        "codex": ProviderSettings(
            type="json-cli",
            binary="codex",
            input_mode="arg",
            input_flag="",
            args=("exec",),
            health_check=HealthCheckSettings(
                version_args=("--version",),
                auth_args=("login", "status"),
            ),
        ),
        "gemini": ProviderSettings(
            type="json-cli",
            binary="gemini",
            input_mode="arg",
            input_flag="--prompt",
            args=("--output-format", "json"),
            health_check=HealthCheckSettings(
                version_args=("--version",),
                auth_args=("--prompt", "ping", "--output-format", "json"),
                auth_output_mode="json",
            ),
        ),
    }


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    server: ServerSettings = field(default_factory=ServerSettings)
    policy: PolicySettings = field(default_factory=PolicySettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    providers: dict[str, ProviderSettings] = field(default_factory=_default_providers)
    audit: AuditSettings = field(default_factory=AuditSettings)
    logs: LogsSettings = field(default_factory=LogsSettings)
    providers_dir: Path | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, config_path: Path | None = None) -> Settings:
        """Load defaults, the optional JSON config file, and environment overrides."""

        resolved_path, explicit = _resolve_config_path(config_path)
        settings = cls()
        if resolved_path.exists():
            settings = _apply_config_file(settings, resolved_path)
        elif explicit:
            raise ConfigError(f"Config file not found: {resolved_path}")
        return _apply_env_overrides(settings)


def _resolve_config_path(config_path: Path | None) -> tuple[Path, bool]:
    if config_path is not None:
        return config_path.resolve(), True
    env_path = os.getenv(CONFIG_PATH_ENV, "").strip()
    if env_path:
        return Path(env_path).resolve(), True
    return (Path.cwd() / DEFAULT_CONFIG_FILENAME).resolve(), False


def _apply_config_file(settings: Settings, path: Path) -> Settings:
    try:
        raw = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ConfigError(f"Invalid JSON in config: {error}") from error
    if not isinstance(raw, dict):
        raise ConfigError("Invalid config: root must be an object.")
    return _merge_document(settings, raw, base_dir=path.parent)


def _merge_document(settings: Settings, raw: dict[str, Any], *, base_dir: Path) -> Settings:
    errors: list[str] = []
    server = _merge_server(settings.server, raw.get("server"), errors)
    policy = _merge_policy(settings.policy, raw.get("policy"), errors)
    runner = _merge_runner(settings.runner, raw.get("runner"), errors)
    audit = _merge_output_dir(settings.audit, raw.get("audit"), "audit", errors)
    logs = _merge_output_dir(settings.logs, raw.get("logs"), "logs", errors)

    providers = dict(settings.providers)
    raw_providers = raw.get("providers", {})
    if not isinstance(raw_providers, dict):
        errors.append("providers must be an object")
        raw_providers = {}
    for provider_id, raw_provider in raw_providers.items():
        merged = _merge_provider(
            providers.get(provider_id),
            raw_provider,
            f"providers.{provider_id}",
            errors,
        )
        if merged is not None:
            providers[provider_id] = merged

    providers_dir: Path | None = settings.providers_dir
    raw_providers_dir = raw.get("providers_dir")
    if raw_providers_dir is not None:
        if not isinstance(raw_providers_dir, str):
            errors.append("providers_dir must be a string")
        elif raw_providers_dir.strip():
            providers_dir = (base_dir / raw_providers_dir).resolve()

    if errors:
        raise ConfigError("Invalid config:\n" + "\n".join(f"- {entry}" for entry in errors))

    if providers_dir is not None:
        external = _load_provider_dir(providers_dir, base=settings.providers)
        # Inline provider entries win over files in providers_dir.
        for provider_id, provider in external.items():
            if provider_id not in raw_providers:
                providers[provider_id] = provider

    return replace(
        settings,
        server=server,
        policy=policy,
        runner=runner,
        providers=providers,
        audit=audit,
        logs=logs,
        providers_dir=providers_dir,
    )


def _merge_server(base: ServerSettings, raw: Any, errors: list[str]) -> ServerSettings:
    if raw is None:
        return base
    if not isinstance(raw, dict):
        errors.append("server must be an object")
        return base
    values = {}
    for key in ("name", "version", "protocol_version"):
        if key in raw:
            if isinstance(raw[key], str):
                values[key] = raw[key]
            else:
                errors.append(f"server.{key} must be a string")
    return replace(base, **values)


def _merge_policy(base: PolicySettings, raw: Any, errors: list[str]) -> PolicySettings:
    if raw is None:
        return base
    if not isinstance(raw, dict):
        errors.append("policy must be an object")
        return base
    values = {}
    for key in ("track_binary_paths", "require_test_command"):
        if key in raw:
            if isinstance(raw[key], bool):
                values[key] = raw[key]
            else:
                errors.append(f"policy.{key} must be a boolean")
    return replace(base, **values)


def _merge_runner(base: RunnerSettings, raw: Any, errors: list[str]) -> RunnerSettings:
    if raw is None:
        return base
    if not isinstance(raw, dict):
        errors.append("runner must be an object")
        return base
    timeout_seconds = base.timeout_seconds
    if "timeout_seconds" in raw:
        if _is_number(raw["timeout_seconds"]):
            timeout_seconds = float(raw["timeout_seconds"])
        else:
            errors.append("runner.timeout_seconds must be a number")
    retry = base.retry
    raw_retry = raw.get("retry")
    if raw_retry is not None:
        if not isinstance(raw_retry, dict):
            errors.append("runner.retry must be an object")
        else:
            max_attempts = retry.max_attempts
            delay_seconds = retry.delay_seconds
            if "max_attempts" in raw_retry:
                if _is_number(raw_retry["max_attempts"]):
                    max_attempts = int(raw_retry["max_attempts"])
                else:
                    errors.append("runner.retry.max_attempts must be a number")
            if "delay_seconds" in raw_retry:
                if _is_number(raw_retry["delay_seconds"]):
                    delay_seconds = float(raw_retry["delay_seconds"])
                else:
                    errors.append("runner.retry.delay_seconds must be a number")
            retry = RetrySettings(max_attempts=max_attempts, delay_seconds=delay_seconds)
    return RunnerSettings(timeout_seconds=timeout_seconds, retry=retry)


def _merge_output_dir(
    base: AuditSettings | LogsSettings,
    raw: Any,
    section: str,
    errors: list[str],
) -> AuditSettings | LogsSettings:
    if raw is None:
        return base
    if not isinstance(raw, dict):
        errors.append(f"{section} must be an object")
        return base
    values: dict[str, Any] = {}
    if "enabled" in raw:
        if isinstance(raw["enabled"], bool):
            values["enabled"] = raw["enabled"]
        else:
            errors.append(f"{section}.enabled must be a boolean")
    if "dir" in raw:
        if isinstance(raw["dir"], str):
            values["dir"] = raw["dir"]
        else:
            errors.append(f"{section}.dir must be a string")
    return replace(base, **values)


def _merge_provider(  # noqa: C901, PLR0912
    base: ProviderSettings | None,
    raw: Any,
    path: str,
    errors: list[str],
) -> ProviderSettings | None:
    if not isinstance(raw, dict):
        errors.append(f"{path} must be an object")
        return None

    error_count = len(errors)
    if base is None:
        # Required for providers without a built-in entry.
        for key in ("binary", "input_mode"):
            if key not in raw:
                errors.append(f"{path}.{key} must be a string")
        if "args" not in raw:
            errors.append(f"{path}.args must be an array of strings")

    for key in ("type", "binary", "input_flag", "model_flag", "model", "cwd"):
        if key in raw and not isinstance(raw[key], str):
            errors.append(f"{path}.{key} must be a string")
    if "input_mode" in raw and raw["input_mode"] not in SUPPORTED_INPUT_MODES:
        errors.append(f"{path}.input_mode must be 'stdin' or 'arg'")
    if "args" in raw and not _is_string_list(raw["args"]):
        errors.append(f"{path}.args must be an array of strings")
    if "env" in raw and not _is_string_map(raw["env"]):
        errors.append(f"{path}.env must be an object of string values")
    if "timeout_seconds" in raw and not _is_number(raw["timeout_seconds"]):
        errors.append(f"{path}.timeout_seconds must be a number")

    health_check = base.health_check if base is not None else HealthCheckSettings()
    if "health_check" in raw:
        health_check = _merge_health_check(
            health_check,
            raw["health_check"],
            f"{path}.health_check",
            errors,
        )

    if len(errors) > error_count:
        return None

    values: dict[str, Any] = {
        key: raw[key]
        for key in ("type", "binary", "input_mode", "input_flag", "model_flag", "model", "cwd")
        if key in raw
    }
    if "args" in raw:
        values["args"] = tuple(raw["args"])
    if "env" in raw:
        values["env"] = dict(raw["env"])
    if "timeout_seconds" in raw:
        values["timeout_seconds"] = float(raw["timeout_seconds"])
    values["health_check"] = health_check
    if base is None:
        return ProviderSettings(**values)
    return replace(base, **values)


def _merge_health_check(
    base: HealthCheckSettings,
    raw: Any,
    path: str,
    errors: list[str],
) -> HealthCheckSettings:
    if not isinstance(raw, dict):
        errors.append(f"{path} must be an object")
        return base
    values: dict[str, Any] = {}
    for key in ("version_args", "auth_args"):
        if key in raw:
            if _is_string_list(raw[key]):
                values[key] = tuple(raw[key])
            else:
                errors.append(f"{path}.{key} must be an array of strings")
    if "auth_output_mode" in raw:
        if raw["auth_output_mode"] in SUPPORTED_AUTH_OUTPUT_MODES:
            values["auth_output_mode"] = raw["auth_output_mode"]
        else:
            errors.append(f"{path}.auth_output_mode must be one of {SUPPORTED_AUTH_OUTPUT_MODES}")
    if "timeout_seconds" in raw:
        if _is_number(raw["timeout_seconds"]):
            values["timeout_seconds"] = float(raw["timeout_seconds"])
        else:
            errors.append(f"{path}.timeout_seconds must be a number")
    if "success_exit_codes" in raw:
        codes = raw["success_exit_codes"]
        if isinstance(codes, list) and all(
            isinstance(code, int) and not isinstance(code, bool) for code in codes
        ):
            values["success_exit_codes"] = tuple(codes)
        else:
            errors.append(f"{path}.success_exit_codes must be an array of integers")
    return replace(base, **values)


def _load_provider_dir(
    directory: Path,
    *,
    base: dict[str, ProviderSettings],
) -> dict[str, ProviderSettings]:
    if not directory.exists():
        return {}
    if not directory.is_dir():
        raise ConfigError(f"providers_dir is not a directory: {directory}")

    providers: dict[str, ProviderSettings] = {}
    for path in sorted(directory.glob("*.json")):
        provider_id = path.stem
        try:
            raw = json.loads(path.read_text("utf-8"))
        except json.JSONDecodeError as error:
            raise ConfigError(f"Invalid JSON in provider config ({path.name}): {error}") from error
        errors: list[str] = []
        provider = _merge_provider(base.get(provider_id), raw, f"providers.{provider_id}", errors)
        if errors or provider is None:
            raise ConfigError(
                f"Invalid provider config ({path.name}):\n"
                + "\n".join(f"- {entry}" for entry in errors),
            )
        providers[provider_id] = provider
    return providers


def _apply_env_overrides(settings: Settings) -> Settings:
    runner = settings.runner
    retry = runner.retry
    timeout_raw = os.getenv("TASK_CONDUIT_RUNNER_TIMEOUT_SECONDS")
    if timeout_raw is not None:
        runner = replace(
            runner,
            timeout_seconds=_env_float("TASK_CONDUIT_RUNNER_TIMEOUT_SECONDS", timeout_raw),
        )
    attempts_raw = os.getenv("TASK_CONDUIT_RUNNER_MAX_ATTEMPTS")
    if attempts_raw is not None:
        retry = replace(
            retry,
            max_attempts=int(_env_float("TASK_CONDUIT_RUNNER_MAX_ATTEMPTS", attempts_raw)),
        )
    delay_raw = os.getenv("TASK_CONDUIT_RUNNER_RETRY_DELAY_SECONDS")
    if delay_raw is not None:
        retry = replace(
            retry,
            delay_seconds=_env_float("TASK_CONDUIT_RUNNER_RETRY_DELAY_SECONDS", delay_raw),
        )
    runner = replace(runner, retry=retry)

    return replace(
        settings,
        runner=runner,
        audit=replace(
            settings.audit,
            enabled=_env_bool("TASK_CONDUIT_AUDIT_ENABLED", default=settings.audit.enabled),
        ),
        logs=replace(
            settings.logs,
            enabled=_env_bool("TASK_CONDUIT_LOGS_ENABLED", default=settings.logs.enabled),
        ),
        log_level=_env_log_level("TASK_CONDUIT_LOG_LEVEL", settings.log_level),
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(entry, str) for entry in value)


def _is_string_map(value: Any) -> bool:
    return isinstance(value, dict) and all(isinstance(entry, str) for entry in value.values())


def _env_float(name: str, value: str) -> float:
    try:
        return float(value)
    except ValueError as error:
        raise ConfigError(f"Invalid numeric value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Invalid boolean value for {name}: {value!r}")


def _env_log_level(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().upper()
    if normalized not in LOG_LEVELS:
        raise ConfigError(
            f"Invalid log level for {name}: {value!r} (expected one of {', '.join(LOG_LEVELS)})",
        )
    return normalized
