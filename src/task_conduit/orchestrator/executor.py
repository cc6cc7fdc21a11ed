"""Task execution: policy gates, git snapshots, attempt loop and verification."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

from task_conduit.config import ProviderSettings, Settings
from task_conduit.models import (
    ExecutionResult,
    FailureClassification,
    GitSnapshot,
    GitSnapshotPair,
    Invocation,
    InvocationInfo,
    ProviderResult,
    TaskRequest,
    VerificationResult,
)
from task_conduit.orchestrator.audit import make_task_id, utc_timestamp, write_audit
from task_conduit.orchestrator.failure_classifier import (
    breaker_reason,
    classify_attempt,
    classify_start_error,
    looks_like_auth_error,
)
from task_conduit.orchestrator.prompt import render_prompt
from task_conduit.orchestrator.run_log import ExecutionLogWriter
from task_conduit.policy import post_check, pre_check
from task_conduit.providers import ProviderAdapter, resolve_provider
from task_conduit.providers.health_cache import ProviderHealthCache
from task_conduit.runner import ProcessStartError, run_invocation, run_shell_command
from task_conduit.vcs import SnapshotError, capture_git_snapshot

logger = logging.getLogger(__name__)

DRY_RUN_LOG = "dryRun enabled: no CLI executed"


class TaskExecutor:
    """Run one task at a time per call; safe to share between worker threads."""

    def __init__(
        self,
        settings: Settings,
        health_cache: ProviderHealthCache,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._health_cache = health_cache
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(UTC))

    def run(self, task: TaskRequest) -> ExecutionResult:  # noqa: PLR0915
        """Execute `task` and return its result; never raises for task-level failures."""

        now = self._clock()
        task_id = task.task_id or make_task_id(now)
        started_at = utc_timestamp(now)
        errors: list[str] = []

        pre = pre_check(task, self._settings.policy)
        errors.extend(pre.errors)

        provider_settings = self._settings.providers.get(task.provider)
        adapter = resolve_provider(provider_settings)
        if provider_settings is None or adapter is None:
            errors.append(f"Unknown provider: {task.provider}")

        cwd = task.cwd or (provider_settings.cwd if provider_settings else None) or os.getcwd()
        task = replace(task, cwd=cwd)
        prompt = render_prompt(task)

        if not task.dry_run and provider_settings is not None:
            record = self._health_cache.get(task.provider)
            if record is not None and not record.available:
                errors.append(
                    format_provider_unavailable(task.provider, provider_settings, record.reason),
                )

        baseline = GitSnapshot()
        try:
            baseline = self._capture_snapshot(cwd)
        except SnapshotError as error:
            errors.append(str(error))

        result = ExecutionResult(
            ok=True,
            task_id=task_id,
            provider=task.provider,
            started_at=started_at,
            prompt=prompt,
            git=GitSnapshotPair(baseline=baseline, post=baseline),
            invocation=InvocationInfo(),
            policy_issues=list(pre.issues),
            policy_warnings=list(pre.warnings),
        )

        if errors or provider_settings is None or adapter is None:
            logger.info("Task %s rejected before execution: %s", task_id, "; ".join(errors))
            result.ok = False
            result.errors = errors
            return self._finish(task, result)

        invocation = replace(adapter.build_invocation(task, provider_settings, prompt), cwd=cwd)
        result.invocation = InvocationInfo.from_invocation(invocation)

        if task.dry_run:
            result.result = ProviderResult(logs=[DRY_RUN_LOG], raw="")
            result.test = VerificationResult.skipped_with(
                command=task.test_command or "",
                ok=True,
                note="dryRun enabled",
            )
            return self._finish(task, result)

        failure = self._run_attempts(
            task=task,
            task_id=task_id,
            started_at=started_at,
            adapter=adapter,
            provider_settings=provider_settings,
            invocation=invocation,
            result=result,
        )
        invocation_failed = failure is not None

        try:
            result.git.post = self._capture_snapshot(cwd)
        except SnapshotError as error:
            result.ok = False
            result.errors.append(str(error))

        result.test = self._verify(task, result, invocation_failed=invocation_failed)

        post = post_check(task, result.git)
        if not post.ok:
            result.ok = False
            result.errors.extend(post.errors)
        result.policy_warnings.extend(post.warnings)
        result.policy_issues.extend(post.issues)

        return self._finish(task, result)

    def _run_attempts(  # noqa: PLR0913
        self,
        *,
        task: TaskRequest,
        task_id: str,
        started_at: str,
        adapter: ProviderAdapter,
        provider_settings: ProviderSettings,
        invocation: Invocation,
        result: ExecutionResult,
    ) -> FailureClassification | None:
        runner_settings = self._settings.runner
        timeout_seconds = max(
            0.0,
            provider_settings.timeout_seconds
            if provider_settings.timeout_seconds is not None
            else runner_settings.timeout_seconds,
        )
        max_attempts = max(1, int(runner_settings.retry.max_attempts))
        delay_seconds = max(0.0, runner_settings.retry.delay_seconds)

        run_log = self._prepare_run_log(
            task=task,
            task_id=task_id,
            started_at=started_at,
            timeout_seconds=timeout_seconds,
            max_attempts=max_attempts,
        )
        if run_log is not None:
            result.execution_log = run_log.describe()

        failure: FailureClassification | None = None
        for attempt in range(1, max_attempts + 1):
            result.attempts = attempt
            logger.info(
                "Task %s attempt %d/%d via %s",
                task_id,
                attempt,
                max_attempts,
                task.provider,
            )
            if run_log is not None:
                run_log.attempt_started(attempt)
            try:
                outcome = run_invocation(
                    invocation,
                    timeout_seconds,
                    log_path=run_log.path if run_log is not None else None,
                )
            except ProcessStartError as error:
                failure = classify_start_error(error)
                if run_log is not None:
                    run_log.append(f"\n[error] {failure.message}\n")
                break

            result.runner = outcome
            result.invocation.exit_code = outcome.exit_code
            result.invocation.duration_ms = outcome.duration_ms
            result.result = adapter.parse_result(outcome.stdout, outcome.stderr)
            if run_log is not None:
                run_log.attempt_summary(outcome)

            classification = classify_attempt(
                outcome,
                provider_id=task.provider,
                binary=provider_settings.binary,
                timeout_seconds=timeout_seconds,
            )
            if classification is None:
                failure = None
                if attempt > 1 and run_log is not None:
                    run_log.append(f"\nSucceeded after {attempt} attempts.\n")
                break

            if run_log is not None:
                run_log.append(f"\n{classification.log_message}\n")
            if not classification.retryable or attempt == max_attempts:
                failure = classification
                break
            logger.info(
                "Task %s attempt %d failed (%s), retrying in %ss",
                task_id,
                attempt,
                classification.category.value,
                delay_seconds,
            )
            if delay_seconds > 0:
                if run_log is not None:
                    run_log.append(f"Retrying in {delay_seconds:g}s...\n")
                self._sleep(delay_seconds)

        if failure is not None:
            result.ok = False
            result.errors.append(failure.message)
            reason = breaker_reason(failure, result.attempts, max_attempts)
            if reason is not None:
                self._health_cache.mark_unavailable(task.provider, reason)
                logger.warning("Provider %s marked unavailable: %s", task.provider, reason)
                result.errors.append(
                    f"Provider {task.provider} marked unavailable. "
                    "Run providers_health after resolving the issue.",
                )
                if run_log is not None:
                    run_log.append("Provider marked unavailable.\n")
        return failure

    def _verify(
        self,
        task: TaskRequest,
        result: ExecutionResult,
        *,
        invocation_failed: bool,
    ) -> VerificationResult:
        command = task.test_command
        if not command:
            return VerificationResult.skipped_with(
                command="",
                ok=True,
                note="No testCommand provided.",
            )
        if result.runner is None or invocation_failed:
            return VerificationResult.skipped_with(
                command=command,
                ok=False,
                note="Invocation failed; tests skipped.",
            )

        try:
            outcome = run_shell_command(
                command,
                task.cwd or os.getcwd(),
                max(0.0, self._settings.runner.timeout_seconds),
            )
        except ProcessStartError as error:
            result.ok = False
            result.errors.append(str(error))
            return VerificationResult(
                command=command,
                ok=False,
                exit_code=-1,
                note="Failed to execute test command.",
            )

        verification = VerificationResult(
            command=command,
            ok=outcome.exit_code == 0 and not outcome.timed_out,
            exit_code=outcome.exit_code,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            duration_ms=outcome.duration_ms,
        )
        if not verification.ok:
            result.ok = False
            result.errors.append(f"Tests failed (exit {outcome.exit_code}).")
        return verification

    def _prepare_run_log(
        self,
        *,
        task: TaskRequest,
        task_id: str,
        started_at: str,
        timeout_seconds: float,
        max_attempts: int,
    ) -> ExecutionLogWriter | None:
        if not self._settings.logs.enabled or task.logs_enabled is False:
            return None
        return ExecutionLogWriter.create(
            log_dir=Path(task.cwd or os.getcwd(), self._settings.logs.dir).resolve(),
            task_id=task_id,
            provider_id=task.provider,
            cwd=task.cwd or os.getcwd(),
            started_at=started_at,
            timeout_seconds=timeout_seconds,
            max_attempts=max_attempts,
        )

    def _capture_snapshot(self, cwd: str) -> GitSnapshot:
        return capture_git_snapshot(
            cwd,
            track_binary_paths=self._settings.policy.track_binary_paths,
        )

    def _finish(self, task: TaskRequest, result: ExecutionResult) -> ExecutionResult:
        write_audit(self._settings, task, result)
        logger.info(
            "Task %s finished: ok=%s attempts=%d errors=%d",
            result.task_id,
            result.ok,
            result.attempts,
            len(result.errors),
        )
        return result


def format_provider_unavailable(
    provider_id: str,
    settings: ProviderSettings,
    reason: str | None,
) -> str:
    if reason and looks_like_auth_error(reason):
        return (
            f'Provider {provider_id} requires login. Run "{settings.binary} login", '
            "then run providers_health."
        )
    if reason and reason.strip():
        return (
            f"Provider {provider_id} unavailable: {reason}. "
            "Run providers_health after resolving the issue."
        )
    return (
        f"Provider {provider_id} unavailable: health check failed. "
        "Run providers_health after resolving the issue."
    )
