"""Deterministic attempt failure classification for the retry loop."""

from __future__ import annotations

from task_conduit.models import AttemptOutcome, FailureCategory, FailureClassification

AUTH_PATTERNS: tuple[str, ...] = (
    "login required",
    "not logged in",
    "please login",
    "please log in",
    "authentication failed",
    "auth check failed",
    "auth failed",
    "unauthorized",
    "token expired",
    "invalid token",
    "access denied",
)
RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "too many requests",
    "quota exceeded",
    "exceeded quota",
    "429",
    "throttle",
)


def classify_attempt(
    outcome: AttemptOutcome,
    *,
    provider_id: str,
    binary: str,
    timeout_seconds: float,
) -> FailureClassification | None:
    """Classify one attempt; `None` means the attempt succeeded."""

    timeout_label = _format_seconds(timeout_seconds)
    if outcome.timed_out:
        return FailureClassification(
            category=FailureCategory.TIMEOUT,
            message=f"Invocation timed out after {timeout_label}s of inactivity.",
            log_message=f"Timeout after {timeout_label}s of inactivity.",
            retryable=True,
        )

    haystack = _normalize_text(stdout=outcome.stdout, stderr=outcome.stderr)

    pattern = _first_match(haystack, AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            category=FailureCategory.AUTH,
            message=f'Login required for provider {provider_id}. Run "{binary} login" and retry.',
            log_message="Login required. Retry after completing CLI login.",
            retryable=False,
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            category=FailureCategory.RATE_LIMIT,
            message=f"Provider {provider_id} rate limited. Wait and retry.",
            log_message="Rate limit detected. Retry later.",
            retryable=False,
            matched_pattern=pattern,
        )

    if outcome.exit_code != 0:
        detail = f"signal {outcome.signal}" if outcome.signal else f"exit {outcome.exit_code}"
        return FailureClassification(
            category=FailureCategory.EXIT,
            message=f"Invocation failed ({detail}).",
            log_message=f"Invocation failed ({detail}).",
            retryable=True,
        )

    return None


def classify_start_error(error: Exception) -> FailureClassification:
    message = str(error)
    return FailureClassification(
        category=FailureCategory.UNKNOWN,
        message=message,
        log_message=message,
        retryable=False,
    )


def breaker_reason(
    classification: FailureClassification,
    attempts_used: int,
    max_attempts: int,
) -> str | None:
    """Return the reason to mark the provider unavailable, or None to leave it alone."""

    if classification.category in (FailureCategory.AUTH, FailureCategory.RATE_LIMIT):
        return classification.log_message
    if (
        classification.category is FailureCategory.TIMEOUT
        and attempts_used > 1
        and attempts_used >= max_attempts
    ):
        return classification.log_message
    return None


def looks_like_auth_error(text: str) -> bool:
    return _first_match(text.lower(), AUTH_PATTERNS) is not None


def _normalize_text(*, stdout: str, stderr: str) -> str:
    return f"{stdout}\n{stderr}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


def _format_seconds(seconds: float) -> str:
    return str(int(seconds)) if float(seconds).is_integer() else f"{seconds:g}"
