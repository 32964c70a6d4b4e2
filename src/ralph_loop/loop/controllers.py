"""Controllers for loop CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import rich_click as click

from ralph_loop.config import Settings
from ralph_loop.logging_config import setup_logging
from ralph_loop.loop.backend import CliAgentBackend
from ralph_loop.loop.circuit_breaker import CircuitBreaker
from ralph_loop.loop.common import utc_now
from ralph_loop.loop.issue_probe import IssueProbe, IssueSeverity
from ralph_loop.loop.lock import LockHeldError, RunLock
from ralph_loop.loop.metrics import (
    build_status_snapshot,
    render_queue_lines,
    render_status_lines,
    render_summary_line,
)
from ralph_loop.loop.models import TaskStoreError
from ralph_loop.loop.resolver import resolve_dependencies
from ralph_loop.loop.scoring import score_all
from ralph_loop.loop.store import (
    TaskStore,
    fix_stats,
    load_store,
    read_store_json,
    save_store,
)
from ralph_loop.loop.supervisor import Supervisor
from ralph_loop.loop.validation import validate_document
from ralph_loop.loop.vcs import GitProgressOracle, OracleError


@dataclass(slots=True)
class LoopRunCommand:
    """CLI input for the supervisor loop."""

    store_path: Path | None
    max_hours: float | None
    max_iterations: int | None
    review_every: int | None
    curator_every: int | None
    sleep_seconds: float | None
    worker_timeout: int | None
    resume: bool
    reset_circuit_breaker: bool


@dataclass(slots=True)
class LoopRunResult:
    lines: list[str]
    exit_code: int


@dataclass(slots=True)
class ValidateCommand:
    store_path: Path | None
    fix: bool


@dataclass(slots=True)
class ValidateResult:
    lines: list[str]
    success: bool


@dataclass(slots=True)
class QueueCommand:
    store_path: Path | None
    limit: int


@dataclass(slots=True)
class StoreCommand:
    """CLI input for commands that only need the store path."""

    store_path: Path | None


@dataclass(slots=True)
class ProbeCommand:
    root: Path | None


class LoopCliController:
    """Coordinates loop, validation and inspection CLI operations."""

    def run_loop(self, command: LoopRunCommand) -> LoopRunResult:
        settings = _settings_for_run(command)
        setup_logging(settings.logging.log_dir, settings.logging.level)
        supervisor = Supervisor(
            store_path=settings.store_path,
            backend=CliAgentBackend(),
            oracle=GitProgressOracle(settings.workdir),
            probe=IssueProbe(settings.probe.root, include=settings.probe.include),
            settings=settings,
        )
        try:
            outcome = supervisor.run(
                resume=command.resume,
                reset_breaker=command.reset_circuit_breaker,
            )
        except (LockHeldError, OracleError) as error:
            raise click.ClickException(str(error)) from error

        return LoopRunResult(
            lines=[
                f"Loop stopped: reason={outcome.reason.value} iterations={outcome.iterations}",
                render_summary_line(outcome.summary),
            ],
            exit_code=outcome.exit_code,
        )

    def validate(self, command: ValidateCommand) -> ValidateResult:
        """Check structure, dependencies and stats; optionally repair stats only."""

        settings = _settings_from_env(store_path=command.store_path)
        path = settings.store_path
        try:
            if command.fix:
                report = fix_stats(path)
            else:
                report = validate_document(read_store_json(path))
        except TaskStoreError as error:
            return ValidateResult(lines=[f"ERROR: {error}"], success=False)

        lines = [f"Validating {path}"]
        lines.extend(f"ERROR: {message}" for message in report.errors)
        lines.extend(f"WARNING: {message}" for message in report.warnings)
        if report.stats_mismatch:
            if command.fix and report.is_valid:
                lines.append("Fixed stats: " + ", ".join(report.stats_mismatch))
            else:
                lines.extend(f"ERROR: Stats mismatch: {item}" for item in report.stats_mismatch)
        counts = report.counts
        lines.append(
            "Counts: "
            f"pending={counts.pending} in_progress={counts.in_progress} "
            f"blocked={counts.blocked} complete={counts.complete} total={counts.total}",
        )
        success = report.is_valid and (command.fix or not report.stats_mismatch)
        lines.append("Task store is valid." if success else "Task store is invalid.")
        return ValidateResult(lines=lines, success=success)

    def queue(self, command: QueueCommand) -> list[str]:
        """Resolve dependencies, rescore, persist and print the ranked queue."""

        settings = _settings_from_env(store_path=command.store_path)
        path = settings.store_path
        with _store_lock(settings):
            store = _load_or_fail(path)
            now = utc_now()
            resolution = resolve_dependencies(store)
            score_all(store, now=now)
            save_store(path, store, now=now)

        lines = [
            f"Updated {path}: unblocked={len(resolution.unblocked)} "
            f"pruned_edges={resolution.pruned_edges}",
        ]
        lines.extend(f"Unblocked: {task_id}" for task_id in resolution.unblocked)
        lines.extend(render_queue_lines(store, limit=command.limit))
        return lines

    def status(self, command: StoreCommand) -> list[str]:
        settings = _settings_from_env(store_path=command.store_path)
        store = _load_or_fail(settings.store_path)
        snapshot = build_status_snapshot(store, now=utc_now())
        return render_status_lines(store=store, snapshot=snapshot)

    def reset_breaker(self, command: StoreCommand) -> list[str]:
        settings = _settings_from_env(store_path=command.store_path)
        path = settings.store_path
        with _store_lock(settings):
            store = _load_or_fail(path)
            previous = store.checkpoints.consecutive_failures
            was_tripped = store.checkpoints.circuit_breaker_tripped
            CircuitBreaker(
                store.checkpoints,
                store.controller,
                backoff_floor_seconds=settings.breaker.backoff_floor_seconds,
            ).reset()
            save_store(path, store)
        return [
            f"Circuit breaker reset for {path} "
            f"(was {'tripped' if was_tripped else 'closed'}, consecutive_failures={previous}).",
        ]

    def probe(self, command: ProbeCommand) -> list[str]:
        settings = _settings_from_env()
        root = command.root or settings.probe.root
        report = IssueProbe(root, include=settings.probe.include).scan()
        lines = [
            f"Issue probe: root={root} files={report.files_scanned} skipped={report.files_skipped}",
            (
                "Findings: "
                f"critical={report.count(IssueSeverity.CRITICAL)} "
                f"medium={report.count(IssueSeverity.MEDIUM)} "
                f"low={report.count(IssueSeverity.LOW)}"
            ),
            f"Issue score: {report.score}",
        ]
        for rule, count in sorted(report.by_rule().items()):
            lines.append(f"  {rule}: {count}")
        return lines


def _settings_from_env(*, store_path: Path | None = None) -> Settings:
    try:
        return Settings.from_env(store_path=store_path)
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _settings_for_run(command: LoopRunCommand) -> Settings:
    settings = _settings_from_env(store_path=command.store_path)
    if command.max_hours is not None:
        settings.loop.max_hours = command.max_hours
    if command.max_iterations is not None:
        settings.loop.max_iterations = command.max_iterations
    if command.review_every is not None:
        settings.review.initial_interval = command.review_every
    if command.curator_every is not None:
        settings.loop.curator_every = command.curator_every
    if command.sleep_seconds is not None:
        settings.loop.sleep_seconds = command.sleep_seconds
    if command.worker_timeout is not None:
        settings.worker.timeout_seconds = command.worker_timeout
    try:
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    return settings


def _load_or_fail(path: Path) -> TaskStore:
    try:
        return load_store(path)
    except TaskStoreError as error:
        raise click.ClickException(str(error)) from error


@contextmanager
def _store_lock(settings: Settings) -> Iterator[None]:
    lock = RunLock(settings.lock_path, store_path=settings.store_path)
    try:
        lock.acquire()
    except LockHeldError as error:
        raise click.ClickException(str(error)) from error
    try:
        yield
    finally:
        lock.release()
