from __future__ import annotations

import allure

from task_conduit.models import AttemptOutcome, FailureCategory
from task_conduit.orchestrator.failure_classifier import (
    breaker_reason,
    classify_attempt,
    classify_start_error,
    looks_like_auth_error,
)
from task_conduit.runner import ProcessStartError

pytestmark = [
    allure.epic("Orchestrator"),
    allure.feature("Failure Classification"),
]


def _outcome(**overrides) -> AttemptOutcome:
    values = {"stdout": "", "stderr": "", "exit_code": 0, "duration_ms": 5}
    values.update(overrides)
    return AttemptOutcome(**values)


def _classify(outcome: AttemptOutcome):
    return classify_attempt(outcome, provider_id="codex", binary="codex", timeout_seconds=120)


def test_success_is_not_a_failure() -> None:
    assert _classify(_outcome(stdout="all good")) is None


def test_timeout_wins_over_everything() -> None:
    classified = _classify(_outcome(timed_out=True, exit_code=-1, stderr="unauthorized"))

    assert classified.category is FailureCategory.TIMEOUT
    assert classified.retryable is True
    assert classified.message == "Invocation timed out after 120s of inactivity."


def test_auth_phrase_is_not_retryable_even_on_zero_exit() -> None:
    classified = _classify(_outcome(stdout="Error: Not Logged In"))

    assert classified.category is FailureCategory.AUTH
    assert classified.retryable is False
    assert classified.matched_pattern == "not logged in"
    assert classified.message == 'Login required for provider codex. Run "codex login" and retry.'


def test_auth_takes_precedence_over_rate_limit() -> None:
    classified = _classify(_outcome(stderr="429 unauthorized", exit_code=1))

    assert classified.category is FailureCategory.AUTH


def test_rate_limit_is_not_retryable() -> None:
    classified = _classify(_outcome(stderr="Quota exceeded for today", exit_code=1))

    assert classified.category is FailureCategory.RATE_LIMIT
    assert classified.retryable is False
    assert classified.log_message == "Rate limit detected. Retry later."


def test_nonzero_exit_is_retryable_and_mentions_signal() -> None:
    by_code = _classify(_outcome(exit_code=2))
    by_signal = _classify(_outcome(exit_code=-1, signal="SIGKILL"))

    assert by_code.category is FailureCategory.EXIT
    assert by_code.retryable is True
    assert by_code.message == "Invocation failed (exit 2)."
    assert by_signal.message == "Invocation failed (signal SIGKILL)."


def test_start_error_is_unknown_and_final() -> None:
    error = ProcessStartError("codex", FileNotFoundError("codex"))

    classified = classify_start_error(error)

    assert classified.category is FailureCategory.UNKNOWN
    assert classified.retryable is False
    assert "codex" in classified.message


def test_breaker_trips_for_auth_and_rate_limit_immediately() -> None:
    auth = _classify(_outcome(stderr="token expired", exit_code=1))
    limited = _classify(_outcome(stderr="throttled", exit_code=1))

    assert breaker_reason(auth, 1, 3) == "Login required. Retry after completing CLI login."
    assert breaker_reason(limited, 1, 3) == "Rate limit detected. Retry later."


def test_breaker_trips_for_timeout_only_after_exhausted_retries() -> None:
    timeout = _classify(_outcome(timed_out=True, exit_code=-1))

    assert breaker_reason(timeout, 1, 1) is None
    assert breaker_reason(timeout, 2, 3) is None
    assert breaker_reason(timeout, 3, 3) == "Timeout after 120s of inactivity."


def test_breaker_ignores_plain_exit_failures() -> None:
    assert breaker_reason(_classify(_outcome(exit_code=1)), 2, 2) is None


def test_looks_like_auth_error_is_case_insensitive() -> None:
    assert looks_like_auth_error("Access Denied by server")
    assert not looks_like_auth_error("binary not found in PATH")
