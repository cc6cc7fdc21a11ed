"""JSON-RPC method dispatch for the task-conduit tool server."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any, BinaryIO

from task_conduit.config import ProviderSettings, Settings
from task_conduit.models import ProviderHealthStatus, TaskRequest
from task_conduit.orchestrator import TaskExecutor
from task_conduit.protocol import JsonRpcConnection, JsonRpcMessage
from task_conduit.providers.health import check_provider_health
from task_conduit.providers.health_cache import ProviderHealthCache

logger = logging.getLogger(__name__)

RUN_TASK_TOOL = "run_task"
PROVIDERS_HEALTH_TOOL = "providers_health"
KNOWN_TOOLS = (RUN_TASK_TOOL, PROVIDERS_HEALTH_TOOL)

SERVER_ERROR = -32000
UNSUPPORTED_PROTOCOL = -32001
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602

HealthCheck = Callable[[str, ProviderSettings], ProviderHealthStatus]


class ConduitServer:
    """Serve framed JSON-RPC requests until `exit` or end of input."""

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        *,
        health_cache: ProviderHealthCache | None = None,
        executor: TaskExecutor | None = None,
        health_check: HealthCheck = check_provider_health,
        max_workers: int = 4,
    ) -> None:
        self._settings = settings
        self._health_cache = health_cache or ProviderHealthCache()
        self._executor = executor or TaskExecutor(settings, self._health_cache)
        self._health_check = health_check
        self._max_workers = max_workers
        self._pool: ThreadPoolExecutor | None = None
        self._connection: JsonRpcConnection | None = None
        self._state_lock = threading.Lock()
        self._shutdown_requested = False
        self._exit_code: int | None = None
        self._handlers: dict[str, Callable[[JsonRpcMessage], None]] = {
            "initialize": self._handle_initialize,
            "initialized": self._handle_initialized,
            "tools/list": self._handle_tools_list,
            "tools/call": self._handle_tools_call,
            "shutdown": self._handle_shutdown,
            "exit": self._handle_exit,
        }

    @property
    def health_cache(self) -> ProviderHealthCache:
        return self._health_cache

    def serve(self, reader: BinaryIO, writer: BinaryIO) -> int:
        """Process requests from `reader`; return the process exit status."""

        self._connection = JsonRpcConnection(reader, writer)
        self._pool = ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix="task-conduit",
        )
        logger.info("Serving %s %s", self._settings.server.name, self._settings.server.version)
        try:
            self._connection.read_loop(self.handle_message)
        finally:
            cancel_pending = self._exit_code is not None
            self._pool.shutdown(wait=True, cancel_futures=cancel_pending)

        with self._state_lock:
            if self._exit_code is not None:
                return self._exit_code
            return 0 if self._shutdown_requested else 1

    def handle_message(self, message: JsonRpcMessage) -> None:
        method = message.get("method")
        if not isinstance(method, str):
            return
        if self._exit_code is not None:
            return

        handler = self._handlers.get(method)
        if handler is None:
            self._respond_error(message, METHOD_NOT_FOUND, f"Unknown method: {method}")
            return
        try:
            handler(message)
        except Exception as error:  # noqa: BLE001
            logger.exception("Handler for %s failed", method)
            self._respond_error(message, SERVER_ERROR, str(error) or "Request failed")

    def _handle_initialize(self, message: JsonRpcMessage) -> None:
        server = self._settings.server
        if not is_protocol_compatible(message.get("params"), server.protocol_version):
            self._respond_error(
                message,
                UNSUPPORTED_PROTOCOL,
                "Unsupported protocol version",
                {"serverVersion": server.protocol_version},
            )
            return
        self._respond(
            message,
            {
                "protocolVersion": server.protocol_version,
                "capabilities": {"tools": {"listChanged": False}},
                "serverInfo": {"name": server.name, "version": server.version},
            },
        )

    def _handle_initialized(self, message: JsonRpcMessage) -> None:
        return None

    def _handle_tools_list(self, message: JsonRpcMessage) -> None:
        def list_tools() -> None:
            statuses = [
                self._cached_or_probe(provider_id, provider)
                for provider_id, provider in self._settings.providers.items()
            ]
            self._respond(
                message,
                {"tools": [run_task_tool_definition(statuses), providers_health_tool_definition()]},
            )

        self._submit(message, list_tools, "Failed to list tools")

    def _handle_tools_call(self, message: JsonRpcMessage) -> None:
        params, errors = validate_tool_call_params(message.get("params"))
        if errors:
            self._respond_error(message, INVALID_PARAMS, "Invalid tool call", {"errors": errors})
            return

        name, arguments = params
        if name == RUN_TASK_TOOL:
            task, errors = validate_task_request(arguments)
            if errors:
                self._respond_error(
                    message,
                    INVALID_PARAMS,
                    "Invalid tool arguments",
                    {"errors": errors},
                )
                return
            self._submit(
                message,
                lambda: self._respond(message, self._executor.run(task).to_payload()),
                "Tool call failed",
            )
            return

        provider_ids, errors = validate_provider_health_request(arguments)
        if errors:
            self._respond_error(
                message,
                INVALID_PARAMS,
                "Invalid tool arguments",
                {"errors": errors},
            )
            return
        self._submit(
            message,
            lambda: self._respond(message, self._providers_health(provider_ids)),
            "Tool call failed",
        )

    def _handle_shutdown(self, message: JsonRpcMessage) -> None:
        with self._state_lock:
            self._shutdown_requested = True
        self._health_cache.clear()
        logger.info("Shutdown requested")
        self._respond(message, None)

    def _handle_exit(self, message: JsonRpcMessage) -> None:
        with self._state_lock:
            self._exit_code = 0 if self._shutdown_requested else 1
        if self._connection is not None:
            self._connection.close()

    def _providers_health(self, provider_ids: list[str] | None) -> dict[str, Any]:
        ids = provider_ids or list(self._settings.providers)
        statuses: list[ProviderHealthStatus] = []
        for provider_id in ids:
            provider = self._settings.providers.get(provider_id)
            if provider is None:
                statuses.append(
                    ProviderHealthStatus(
                        provider_id=provider_id,
                        ok=False,
                        reason="unknown provider",
                    ),
                )
                continue
            statuses.append(self._refresh_status(provider_id, provider))
        return {"providers": [status.to_payload() for status in statuses]}

    def _cached_or_probe(
        self,
        provider_id: str,
        provider: ProviderSettings,
    ) -> ProviderHealthStatus:
        record = self._health_cache.get(provider_id)
        if record is not None:
            return record.to_status()
        return self._refresh_status(provider_id, provider)

    def _refresh_status(self, provider_id: str, provider: ProviderSettings) -> ProviderHealthStatus:
        status = self._health_check(provider_id, provider)
        self._health_cache.record_probe(status)
        logger.info("Provider %s probed: ok=%s", provider_id, status.ok)
        return status

    def _submit(self, message: JsonRpcMessage, work: Callable[[], None], failure: str) -> None:
        def guarded() -> None:
            try:
                work()
            except Exception as error:  # noqa: BLE001
                logger.exception("Background request failed")
                self._respond_error(message, SERVER_ERROR, str(error) or failure)

        if self._pool is None:
            guarded()
            return
        self._pool.submit(guarded)

    def _respond(self, message: JsonRpcMessage, result: Any) -> None:
        if message.get("id") is None or self._connection is None:
            return
        self._connection.send({"jsonrpc": "2.0", "id": message["id"], "result": result})

    def _respond_error(
        self,
        message: JsonRpcMessage,
        code: int,
        text: str,
        data: Any = None,
    ) -> None:
        if message.get("id") is None or self._connection is None:
            return
        error: dict[str, Any] = {"code": code, "message": text}
        if data is not None:
            error["data"] = data
        self._connection.send({"jsonrpc": "2.0", "id": message["id"], "error": error})


def is_protocol_compatible(params: Any, server_version: str) -> bool:
    if not isinstance(params, dict):
        return True
    client_version = params.get("protocolVersion")
    if client_version is None:
        return True
    return isinstance(client_version, str) and client_version == server_version


def run_task_tool_definition(statuses: list[ProviderHealthStatus]) -> dict[str, Any]:
    available = [status.provider_id for status in statuses if status.ok]
    unavailable = [
        {"id": status.provider_id, "reason": status.reason or "unavailable"}
        for status in statuses
        if not status.ok
    ]

    provider_property: dict[str, Any] = {"type": "string"}
    if available:
        provider_property["enum"] = available

    description = [
        "Run a delegated task using a local LLM CLI with policy enforcement.",
        "Use providers_health to refresh cached availability.",
    ]
    if available:
        description.append(f"Available providers: {', '.join(available)}.")
    if unavailable:
        listed = ", ".join(f"{entry['id']} ({entry['reason']})" for entry in unavailable)
        description.append(f"Unavailable providers: {listed}.")

    return {
        "name": RUN_TASK_TOOL,
        "description": " ".join(description),
        "inputSchema": {
            "type": "object",
            "properties": {
                "taskId": {"type": "string"},
                "provider": provider_property,
                "instructions": {"type": "string"},
                "allowlist": {"type": "array", "items": {"type": "string"}},
                "cwd": {"type": "string"},
                "dryRun": {"type": "boolean"},
                "env": {"type": "object", "additionalProperties": {"type": "string"}},
                "auditEnabled": {"type": "boolean"},
                "logsEnabled": {"type": "boolean"},
                "testCommand": {"type": "string"},
            },
            "required": ["provider", "instructions"],
        },
        "providerStatus": {"available": available, "unavailable": unavailable},
    }


def providers_health_tool_definition() -> dict[str, Any]:
    return {
        "name": PROVIDERS_HEALTH_TOOL,
        "description": "Run provider health checks and refresh cached availability.",
        "inputSchema": {
            "type": "object",
            "properties": {"providers": {"type": "array", "items": {"type": "string"}}},
        },
    }


def validate_tool_call_params(value: Any) -> tuple[tuple[str, Any], list[str]]:
    """Return `(name, arguments)` and the list of validation errors."""

    if not isinstance(value, dict):
        return ("", None), ["params must be an object"]
    errors: list[str] = []
    name = value.get("name")
    if not isinstance(name, str):
        errors.append("params.name must be a string")
    elif name not in KNOWN_TOOLS:
        errors.append(f"unknown tool: {name}")
    if "arguments" not in value:
        errors.append("params.arguments is required")
    return (name if isinstance(name, str) else "", value.get("arguments")), errors


def validate_provider_health_request(value: Any) -> tuple[list[str] | None, list[str]]:
    if not isinstance(value, dict):
        return None, ["arguments must be an object"]
    providers = value.get("providers")
    if providers is not None and not _is_string_list(providers):
        return None, ["providers must be an array of strings"]
    return providers, []


_OPTIONAL_STRING_FIELDS = ("taskId", "cwd", "testCommand")
_OPTIONAL_BOOL_FIELDS = ("dryRun", "auditEnabled", "logsEnabled")


def validate_task_request(value: Any) -> tuple[TaskRequest | None, list[str]]:  # noqa: C901
    """Validate camelCase `run_task` arguments into a `TaskRequest`."""

    if not isinstance(value, dict):
        return None, ["arguments must be an object"]

    errors: list[str] = []
    if not isinstance(value.get("provider"), str):
        errors.append("provider must be a string")
    if not isinstance(value.get("instructions"), str):
        errors.append("instructions must be a string")
    for key in _OPTIONAL_STRING_FIELDS:
        if value.get(key) is not None and not isinstance(value[key], str):
            errors.append(f"{key} must be a string")
    for key in _OPTIONAL_BOOL_FIELDS:
        if value.get(key) is not None and not isinstance(value[key], bool):
            errors.append(f"{key} must be a boolean")
    if value.get("allowlist") is not None and not _is_string_list(value["allowlist"]):
        errors.append("allowlist must be an array of strings")
    if value.get("env") is not None and not _is_string_map(value["env"]):
        errors.append("env must be an object of string values")
    if errors:
        return None, errors

    return (
        TaskRequest(
            provider=value["provider"],
            instructions=value["instructions"],
            task_id=value.get("taskId"),
            allowlist=list(value.get("allowlist") or []),
            cwd=value.get("cwd"),
            dry_run=bool(value.get("dryRun", False)),
            env=dict(value.get("env") or {}),
            test_command=value.get("testCommand"),
            audit_enabled=value.get("auditEnabled"),
            logs_enabled=value.get("logsEnabled"),
        ),
        [],
    )


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(entry, str) for entry in value)


def _is_string_map(value: Any) -> bool:
    return isinstance(value, dict) and all(isinstance(entry, str) for entry in value.values())
