"""Deterministic worker failure classification for the breaker and backoff."""

from __future__ import annotations

from dataclasses import dataclass

from ralph_loop.loop.backend.base import WorkerResult
from ralph_loop.loop.models import FailureKind

DEFAULT_TRANSIENT_EXIT_CODES: tuple[int, ...] = (137, 143)

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient credit",
    "billing",
    "payment",
    "credit balance",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
    "please run /login",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "429",
    "overloaded",
    "try again later",
)
_CONCURRENCY_PATTERNS: tuple[str, ...] = (
    "concurrent",
    "concurrency",
    "another session",
    "already running",
    "resource busy",
    "lock file",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "timed out",
    "503",
    "502",
)


@dataclass(slots=True)
class WorkerFailure:
    """Normalized failure classification result."""

    kind: FailureKind
    matched_rule: str
    matched_pattern: str | None
    exit_code: int

    @property
    def transient(self) -> bool:
        return self.kind not in _NON_TRANSIENT_KINDS

    def describe(self) -> str:
        suffix = f" ({self.matched_pattern!r})" if self.matched_pattern else ""
        return f"{self.kind.value}: exit {self.exit_code}, {self.matched_rule}{suffix}"


_NON_TRANSIENT_KINDS = frozenset(
    {
        FailureKind.BILLING_OR_QUOTA,
        FailureKind.ACCESS_OR_AUTH,
        FailureKind.NON_RETRYABLE,
        FailureKind.LAUNCH_ERROR,
    },
)

_PATTERN_TABLE: tuple[tuple[FailureKind, str, tuple[str, ...]], ...] = (
    (FailureKind.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
    (FailureKind.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
    (FailureKind.RATE_LIMITED, "rate_limited", _RATE_LIMIT_PATTERNS),
    (FailureKind.CONCURRENCY, "concurrency", _CONCURRENCY_PATTERNS),
)


def classify_worker_result(
    result: WorkerResult,
    *,
    transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES,
) -> WorkerFailure | None:
    """Map a worker result to a FailureKind; ``None`` for a clean exit."""

    if result.timed_out:
        return WorkerFailure(
            kind=FailureKind.TIMEOUT,
            matched_rule="timed_out",
            matched_pattern=None,
            exit_code=result.exit_code,
        )
    if result.exit_code == 0:
        return None

    haystack = _normalize_text(stdout=result.stdout, stderr=result.stderr)
    for kind, rule, patterns in _PATTERN_TABLE:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return WorkerFailure(
                kind=kind,
                matched_rule=rule,
                matched_pattern=pattern,
                exit_code=result.exit_code,
            )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or result.exit_code in transient_exit_codes:
        return WorkerFailure(
            kind=FailureKind.TRANSIENT,
            matched_rule=(
                "transient_exit_code"
                if result.exit_code in transient_exit_codes and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
            exit_code=result.exit_code,
        )

    return WorkerFailure(
        kind=FailureKind.NON_RETRYABLE,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
        exit_code=result.exit_code,
    )


def launch_failure(message: str, *, transient: bool) -> WorkerFailure:
    """Failure record for a worker that could not be started at all."""

    return WorkerFailure(
        kind=FailureKind.TRANSIENT if transient else FailureKind.LAUNCH_ERROR,
        matched_rule="launch_error",
        matched_pattern=message,
        exit_code=-1,
    )


def _normalize_text(*, stdout: str, stderr: str) -> str:
    return f"{stderr}\n{stdout}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
