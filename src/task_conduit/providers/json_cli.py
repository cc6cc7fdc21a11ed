"""Adapter for agents that print a JSON (or JSON-lines) result on stdout."""

from __future__ import annotations

import json
import re
from typing import Any

from task_conduit.config import ProviderSettings
from task_conduit.models import Invocation, ProviderResult, ProviderTestEntry, TaskRequest

DEFAULT_MODEL_FLAG = "--model"
DEFAULT_INPUT_FLAG = "--prompt"

_RESULT_KEYS = ("diff", "logs", "tests", "raw")
_LINE_SPLIT_RE = re.compile(r"\r?\n")
_INVALID = object()


class JsonCliProvider:
    id = "json-cli"
    display_name = "JSON CLI"

    def build_invocation(
        self,
        task: TaskRequest,
        settings: ProviderSettings,
        prompt: str,
    ) -> Invocation:
        args = list(settings.args)
        model_flag = settings.model_flag if settings.model_flag is not None else DEFAULT_MODEL_FLAG
        if settings.model and model_flag and model_flag not in args:
            args.extend([model_flag, settings.model])

        input_text: str | None = None
        if settings.input_mode == "arg":
            flag = settings.input_flag if settings.input_flag is not None else DEFAULT_INPUT_FLAG
            if flag:
                args.extend([flag, prompt])
            else:
                args.append(prompt)
        else:
            input_text = prompt

        return Invocation(
            command=settings.binary,
            args=tuple(args),
            cwd=task.cwd or settings.cwd,
            env={**settings.env, **task.env} or None,
            input_text=input_text,
        )

    def parse_result(self, stdout: str, stderr: str) -> ProviderResult:
        return parse_output(stdout)


def parse_output(stdout: str) -> ProviderResult:
    """Recover a structured result from agent stdout, falling back to raw text."""

    result = _parse_json_text(stdout)
    if result is None:
        result = _parse_json_lines(stdout)
    if result is None:
        result = ProviderResult(raw=stdout)
    return result


def _parse_json_text(text: str) -> ProviderResult | None:
    stripped = text.strip()
    if not stripped:
        return None
    direct = _try_load(stripped)
    if direct is not _INVALID:
        return _to_provider_result(direct)

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start == -1 or end <= start:
        return None
    embedded = _try_load(stripped[start : end + 1])
    if embedded is _INVALID:
        return None
    return _to_provider_result(embedded)


def _parse_json_lines(text: str) -> ProviderResult | None:
    last_match: ProviderResult | None = None
    for line in _LINE_SPLIT_RE.split(text):
        if not line.strip():
            continue
        parsed = _try_load(line)
        if parsed is _INVALID:
            continue
        result = _to_provider_result(parsed)
        if result is not None:
            last_match = result
    return last_match


def _try_load(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return _INVALID


def _to_provider_result(value: Any) -> ProviderResult | None:
    if not isinstance(value, dict):
        return None
    if any(key in value for key in _RESULT_KEYS):
        return ProviderResult(
            diff=value.get("diff") if isinstance(value.get("diff"), str) else None,
            logs=_string_list(value.get("logs")),
            tests=_test_entries(value.get("tests")),
            raw=value.get("raw") if isinstance(value.get("raw"), str) else None,
        )
    if isinstance(value.get("response"), str):
        return ProviderResult(raw=value["response"])
    return None


def _string_list(value: Any) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [entry if isinstance(entry, str) else json.dumps(entry) for entry in value]


def _test_entries(value: Any) -> list[ProviderTestEntry] | None:
    if not isinstance(value, list):
        return None
    entries: list[ProviderTestEntry] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        output = item.get("output")
        entries.append(
            ProviderTestEntry(
                name=str(item.get("name", "")),
                ok=bool(item.get("ok", False)),
                output=output if isinstance(output, str) else None,
            ),
        )
    return entries
