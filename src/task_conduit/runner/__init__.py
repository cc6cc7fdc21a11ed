"""Process execution runtime."""

from task_conduit.runner.process import (
    ProcessStartError,
    run_command,
    run_invocation,
    run_shell_command,
)

__all__ = ["ProcessStartError", "run_command", "run_invocation", "run_shell_command"]
