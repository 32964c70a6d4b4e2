from __future__ import annotations

import allure

from ralph_loop.loop.backend.base import WorkerResult
from ralph_loop.loop.failure_classifier import classify_worker_result, launch_failure
from ralph_loop.loop.models import FailureKind

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Failure Classification"),
]


def _result(exit_code: int, *, stdout: str = "", stderr: str = "", timed_out: bool = False):
    return WorkerResult(
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        timed_out=timed_out,
        duration_seconds=1.0,
    )


def test_clean_exit_is_not_a_failure() -> None:
    assert classify_worker_result(_result(0, stderr="rate limit warning")) is None


def test_timeout_wins_over_exit_code() -> None:
    classified = classify_worker_result(_result(124, timed_out=True))

    assert classified.kind == FailureKind.TIMEOUT
    assert classified.transient


def test_classifier_prefers_billing_over_transient_exit_code() -> None:
    classified = classify_worker_result(_result(137, stderr="Quota exceeded for this project"))

    assert classified.kind == FailureKind.BILLING_OR_QUOTA
    assert classified.matched_rule == "billing_or_quota"
    assert classified.matched_pattern == "quota"
    assert not classified.transient


def test_classifier_maps_auth_failures() -> None:
    classified = classify_worker_result(_result(1, stdout="Invalid API key. Please run /login"))

    assert classified.kind == FailureKind.ACCESS_OR_AUTH
    assert not classified.transient


def test_classifier_maps_rate_limit() -> None:
    classified = classify_worker_result(_result(1, stderr="HTTP 429 Too Many Requests"))

    assert classified.kind == FailureKind.RATE_LIMITED
    assert classified.matched_pattern == "too many requests"
    assert classified.transient


def test_classifier_maps_concurrency() -> None:
    classified = classify_worker_result(_result(1, stderr="Another session is already running"))

    assert classified.kind == FailureKind.CONCURRENCY


def test_generic_transient_text() -> None:
    classified = classify_worker_result(_result(2, stderr="Connection reset by peer"))

    assert classified.kind == FailureKind.TRANSIENT
    assert classified.matched_rule == "generic_transient"


def test_transient_exit_code_without_text() -> None:
    classified = classify_worker_result(_result(143), transient_exit_codes=(143,))

    assert classified.kind == FailureKind.TRANSIENT
    assert classified.matched_rule == "transient_exit_code"


def test_classifier_falls_back_to_non_retryable() -> None:
    classified = classify_worker_result(_result(1, stderr="SyntaxError in chapter build"))

    assert classified.kind == FailureKind.NON_RETRYABLE
    assert classified.matched_rule == "fallback_non_retryable"
    assert classified.describe() == "non_retryable: exit 1, fallback_non_retryable"


def test_launch_failure_respects_transient_hint() -> None:
    assert launch_failure("not found", transient=False).kind == FailureKind.LAUNCH_ERROR
    assert launch_failure("EAGAIN", transient=True).kind == FailureKind.TRANSIENT
    assert launch_failure("x", transient=True).exit_code == -1
