"""Task orchestration: attempts, retries, breaker, audit and run logs."""

from task_conduit.orchestrator.executor import TaskExecutor

__all__ = ["TaskExecutor"]
