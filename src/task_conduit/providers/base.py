"""Provider adapter contract."""

from __future__ import annotations

from typing import Protocol

from task_conduit.config import ProviderSettings
from task_conduit.models import Invocation, ProviderResult, TaskRequest


class ProviderAdapter(Protocol):
    """Translate a task into a command line and the command's output into a result."""

    id: str
    display_name: str

    def build_invocation(
        self,
        task: TaskRequest,
        settings: ProviderSettings,
        prompt: str,
    ) -> Invocation: ...

    def parse_result(self, stdout: str, stderr: str) -> ProviderResult: ...
