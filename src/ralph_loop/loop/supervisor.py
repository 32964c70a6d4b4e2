"""Supervisor loop driving one external worker against the task store."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ralph_loop.config import Settings
from ralph_loop.loop.backend import AgentBackend, BackendRunError, WorkerRequest, WorkerResult
from ralph_loop.loop.circuit_breaker import CircuitBreaker, RollbackFailedError, recover_store
from ralph_loop.loop.common import utc_now
from ralph_loop.loop.failure_classifier import (
    WorkerFailure,
    classify_worker_result,
    launch_failure,
)
from ralph_loop.loop.issue_probe import IssueProbe
from ralph_loop.loop.lock import RunLock
from ralph_loop.loop.metrics import LoopRunSummary, render_summary_line
from ralph_loop.loop.models import (
    BreakerState,
    CycleOutcome,
    FailureKind,
    RalphLoopError,
    StopReason,
    Task,
    TaskStatus,
    TaskStoreError,
)
from ralph_loop.loop.prompts import (
    build_curator_instruction,
    build_initializer_instruction,
    build_review_instruction,
    build_worker_instruction,
)
from ralph_loop.loop.resolver import resolve_dependencies
from ralph_loop.loop.review_controller import ReviewController
from ralph_loop.loop.scoring import score_all, select_next_task
from ralph_loop.loop.store import TaskStore, content_hash, load_store, save_store
from ralph_loop.loop.validation import StoreValidationError
from ralph_loop.loop.vcs import ProgressOracle

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunOutcome:
    """Why and after how many cycles the loop stopped."""

    reason: StopReason
    iterations: int
    summary: LoopRunSummary

    @property
    def exit_code(self) -> int:
        return self.reason.exit_code


@dataclass(slots=True)
class CycleReport:
    """Classification of one worker cycle."""

    task_id: str
    outcome: CycleOutcome
    failure: WorkerFailure | None
    backoff_seconds: float = 0.0


class Supervisor:
    """Single-threaded control loop over one task store.

    Each cycle resolves dependencies, picks the top-scored eligible task,
    invokes the worker, infers progress from the oracle pointer and the store
    hash, feeds the circuit breaker and the review controller, and persists.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store_path: Path,
        backend: AgentBackend,
        oracle: ProgressOracle,
        probe: IssueProbe,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
        sleeper: Callable[[float], None] | None = None,
    ) -> None:
        self.store_path = store_path
        self.backend = backend
        self.oracle = oracle
        self.probe = probe
        self.settings = settings
        self._clock = clock
        self._sleeper = sleeper or self._sleep_with_stop
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._iteration = 0

    def request_stop(self, *, signal_name: str = "manual") -> None:
        if not self._stop_requested:
            logger.warning("Stop requested (%s), finishing current cycle", signal_name)
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def run(self, *, resume: bool = False, reset_breaker: bool = False) -> RunOutcome:
        """Run cycles until drained, tripped, out of budget or interrupted."""

        summary = LoopRunSummary()
        lock = RunLock(self.settings.lock_path, store_path=self.store_path)
        lock.acquire()
        try:
            with self._signal_handlers():
                reason = self._run_locked(
                    resume=resume,
                    reset_breaker=reset_breaker,
                    summary=summary,
                )
        except RalphLoopError as error:
            logger.error("Loop stopped: reason=error iterations=%d (%s)", self._iteration, error)
            raise
        finally:
            lock.release()

        logger.info(render_summary_line(summary))
        logger.info("Loop stopped: reason=%s iterations=%d", reason.value, self._iteration)
        return RunOutcome(reason=reason, iterations=self._iteration, summary=summary)

    def _run_locked(  # noqa: C901, PLR0911
        self,
        *,
        resume: bool,
        reset_breaker: bool,
        summary: LoopRunSummary,
    ) -> StopReason:
        try:
            store = load_store(self.store_path)
        except StoreValidationError as error:
            for message in error.report.errors:
                logger.error("Validation error: %s", message)
            return StopReason.VALIDATION_FAILED
        except TaskStoreError as error:
            logger.error("%s", error)
            return StopReason.VALIDATION_FAILED

        breaker = self._build_breaker(store)
        if reset_breaker:
            breaker.reset()
        elif breaker.state == BreakerState.TRIPPED:
            logger.error(
                "Circuit breaker is tripped (last good commit: %s); "
                "rerun with --reset-circuit-breaker to resume.",
                store.checkpoints.last_good_commit or "none",
            )
            return StopReason.TRIPPED

        self._prepare_store(store, resume=resume)
        review = self._build_review_controller(store)
        self._save(store)

        if self._should_run_initializer(resume=resume):
            try:
                store = self._run_pass(
                    store,
                    instruction=build_initializer_instruction(
                        store_name=self.store_path.name,
                        progress_file=self.settings.loop.progress_file,
                    ),
                    label="initializer",
                )
            except RollbackFailedError as error:
                logger.error("%s", error)
                return StopReason.ROLLBACK_FAILED

        started_at = self._clock()
        while True:
            reason = self._check_stop(store, breaker, started_at=started_at, summary=summary)
            if reason is not None:
                break

            self._resolve_and_score(store, summary)
            if select_next_task(store) is None:
                reason = StopReason.DRAINED
                break

            store.controller.iteration += 1
            self._iteration = store.controller.iteration
            iteration = self._iteration
            summary.cycles += 1
            logger.info("Cycle %d (review interval %d)", iteration, store.controller.current_interval)

            try:
                if self._curator_due(summary.cycles):
                    store = self._run_pass(
                        store,
                        instruction=build_curator_instruction(
                            iteration=iteration,
                            store_name=self.store_path.name,
                            progress_file=self.settings.loop.progress_file,
                        ),
                        label=f"curator-{iteration}",
                    )
                    summary.curations += 1
                    self._resolve_and_score(store, summary)

                task = select_next_task(store)
                if task is None:
                    self._save(store)
                    reason = StopReason.DRAINED
                    break

                store, report = self._run_worker_cycle(store, task, breaker, iteration=iteration)
                if report.outcome == CycleOutcome.PROGRESS:
                    summary.progress += 1
                elif report.outcome == CycleOutcome.PARTIAL:
                    summary.partial += 1
                else:
                    summary.failures += 1

                probe_score = self.probe.scan().score
                review.check_regression(iteration, probe_score)

                decision = review.is_due(iteration)
                if decision.due and not self._stop_requested:
                    logger.info("Review due at cycle %d (%s)", iteration, decision.reason)
                    store = self._run_pass(
                        store,
                        instruction=build_review_instruction(
                            today=self._clock().date(),
                            issue_score=probe_score,
                        ),
                        label=f"review-{iteration}",
                    )
                    review.record_review(iteration, self.probe.scan().score, now=self._clock())
                    summary.reviews += 1
            except RollbackFailedError as error:
                logger.error("%s", error)
                reason = StopReason.ROLLBACK_FAILED
                break

            self._resolve_and_score(store, summary)
            tripped = breaker.evaluate()
            self._save(store)
            if tripped:
                reason = StopReason.TRIPPED
                break

            if not self._stop_requested:
                self._sleeper(self.settings.loop.sleep_seconds + report.backoff_seconds)

        if reason == StopReason.INTERRUPTED:
            store.checkpoints.interrupted_at = f"interrupted at cycle {self._iteration}"
        if reason != StopReason.ROLLBACK_FAILED:
            self._save(store)
        return reason

    def _run_worker_cycle(
        self,
        store: TaskStore,
        task: Task,
        breaker: CircuitBreaker,
        *,
        iteration: int,
    ) -> tuple[TaskStore, CycleReport]:
        task_id = task.task_id
        task.transition(TaskStatus.IN_PROGRESS)
        self._save(store)
        pointer_before = self.oracle.current_pointer()
        hash_before = content_hash(self.store_path)
        completed_before = store.completed_ids()

        logger.info("Cycle %d: working on %s (score=%d) %s", iteration, task_id, task.score, task.title)
        result, failure = self._invoke(
            build_worker_instruction(
                iteration=iteration,
                task=task,
                store_name=self.store_path.name,
            ),
            label=f"worker-{iteration}-{task_id}",
        )

        store, corrupted = self._reload(store)
        pointer_after = self.oracle.current_pointer()
        hash_after = content_hash(self.store_path)
        current = store.find(task_id)

        interrupted = self._stop_requested and result is not None and result.timed_out
        if not corrupted and self.oracle.pointers_differ(pointer_before, pointer_after):
            if failure is not None:
                logger.warning(
                    "Worker reported %s but committed; counting progress",
                    failure.describe(),
                )
            outcome = CycleOutcome.PROGRESS
        elif not corrupted and failure is None and hash_before != hash_after:
            outcome = CycleOutcome.PARTIAL
        else:
            outcome = CycleOutcome.FAILURE
            if failure is None:
                failure = WorkerFailure(
                    kind=FailureKind.NO_PROGRESS,
                    matched_rule="store_corrupted" if corrupted else "no_change",
                    matched_pattern=None,
                    exit_code=result.exit_code if result is not None else -1,
                )

        now = self._clock()
        report = CycleReport(task_id=task_id, outcome=outcome, failure=failure)
        if outcome == CycleOutcome.PROGRESS:
            if current is not None and current.status == TaskStatus.BLOCKED:
                logger.info(
                    "Cycle %d: worker blocked %s on %s, keeping it blocked",
                    iteration,
                    task_id,
                    ", ".join(current.blocked_by) or "nothing",
                )
            elif current is not None:
                if current.status != TaskStatus.COMPLETE:
                    current.transition(TaskStatus.COMPLETE)
                current.completed_at = current.completed_at or now
            breaker.record_success(pointer_after, task_id, now=now)
            logger.info("Cycle %d: progress on %s (%s)", iteration, task_id, pointer_after[:12])
        else:
            _revert_unearned_completions(store, completed_before)
            if current is not None and current.status == TaskStatus.IN_PROGRESS:
                current.transition(TaskStatus.PENDING)
            if outcome == CycleOutcome.PARTIAL:
                breaker.record_success(pointer_after, task_id, now=now)
                logger.info("Cycle %d: partial progress on %s (store changed)", iteration, task_id)
            elif interrupted:
                logger.warning("Cycle %d: worker stopped by shutdown request", iteration)
            else:
                report.backoff_seconds = breaker.record_failure()
                logger.warning(
                    "Cycle %d: no progress on %s: %s",
                    iteration,
                    task_id,
                    failure.describe() if failure is not None else "unknown",
                )
        return store, report

    def _run_pass(self, store: TaskStore, *, instruction: str, label: str) -> TaskStore:
        """Run a curator/review/initializer invocation; failures do not feed the breaker."""

        self._save(store)
        pointer_before = self.oracle.current_pointer()
        completed_before = store.completed_ids()
        _, failure = self._invoke(instruction, label=label)
        if failure is not None:
            logger.warning("%s pass failed: %s", label, failure.describe())
        store, _ = self._reload(store)
        if not self.oracle.pointers_differ(pointer_before, self.oracle.current_pointer()):
            _revert_unearned_completions(store, completed_before)
        return store

    def _invoke(
        self,
        instruction: str,
        *,
        label: str,
    ) -> tuple[WorkerResult | None, WorkerFailure | None]:
        request = WorkerRequest(
            instruction=instruction,
            timeout_seconds=self.settings.worker.timeout_seconds,
            command_template=self.settings.worker.command_template,
            workdir=self.settings.workdir,
            log_dir=self.settings.logging.log_dir,
            label=label,
            shutdown_requested=lambda: self._stop_requested,
            graceful_shutdown_seconds=self.settings.worker.graceful_shutdown_seconds,
        )
        try:
            result = self.backend.invoke(request)
        except BackendRunError as error:
            logger.error("%s could not be started: %s", label, error)
            return None, launch_failure(str(error), transient=error.transient)
        failure = classify_worker_result(
            result,
            transient_exit_codes=self.settings.worker.transient_exit_codes,
        )
        logger.info(
            "%s finished: exit=%d timed_out=%s duration=%.1fs",
            label,
            result.exit_code,
            result.timed_out,
            result.duration_seconds,
        )
        return result, failure

    def _reload(self, store: TaskStore) -> tuple[TaskStore, bool]:
        """Reload after an external edit, rolling back a corrupted file.

        Loop-owned checkpoint and controller state is carried over from memory.
        """

        corrupted = False
        try:
            reloaded = load_store(self.store_path)
        except TaskStoreError as error:
            logger.error("Task store corrupted after invocation: %s", error)
            corrupted = True
            pointer = recover_store(self.store_path, self.oracle, store.checkpoints)
            try:
                reloaded = load_store(self.store_path)
            except TaskStoreError as reload_error:
                raise RollbackFailedError(
                    f"Task store is still invalid after rollback to {pointer}: {reload_error}",
                ) from reload_error
            logger.warning("Task store restored from %s", pointer[:12])

        reloaded.checkpoints = store.checkpoints
        reloaded.controller = store.controller
        return reloaded, corrupted

    def _check_stop(
        self,
        store: TaskStore,
        breaker: CircuitBreaker,
        *,
        started_at: datetime,
        summary: LoopRunSummary,
    ) -> StopReason | None:
        if breaker.state == BreakerState.TRIPPED:
            return StopReason.TRIPPED
        if self._stop_requested:
            return StopReason.INTERRUPTED
        max_hours = self.settings.loop.max_hours
        if max_hours > 0 and (self._clock() - started_at).total_seconds() >= max_hours * 3600:
            logger.info("Time budget of %sh exhausted", max_hours)
            return StopReason.TIME_LIMIT
        max_iterations = self.settings.loop.max_iterations
        if max_iterations > 0 and summary.cycles >= max_iterations:
            logger.info("Iteration budget of %d exhausted", max_iterations)
            return StopReason.ITERATION_LIMIT
        return None

    def _prepare_store(self, store: TaskStore, *, resume: bool) -> None:
        for task in store.iter_tasks():
            if task.status == TaskStatus.IN_PROGRESS:
                logger.warning("Recovering stale in_progress task %s to pending", task.task_id)
                task.transition(TaskStatus.PENDING)

        controller = store.controller
        if resume:
            logger.info(
                "Resuming from iteration %d (review interval %d)",
                controller.iteration,
                controller.current_interval,
            )
        else:
            controller.iteration = 0
            controller.current_interval = self.settings.review.initial_interval
            controller.last_review_iteration = 0
            controller.last_probe_iteration = 0
        self._iteration = controller.iteration

        store.checkpoints.interrupted_at = None
        if store.checkpoints.last_good_commit is None:
            pointer = self.oracle.current_pointer()
            if pointer:
                store.checkpoints.last_good_commit = pointer

    def _build_breaker(self, store: TaskStore) -> CircuitBreaker:
        return CircuitBreaker(
            store.checkpoints,
            store.controller,
            max_consecutive_failures=self.settings.breaker.max_consecutive_failures,
            backoff_floor_seconds=self.settings.breaker.backoff_floor_seconds,
            backoff_ceiling_seconds=self.settings.breaker.backoff_ceiling_seconds,
        )

    def _build_review_controller(self, store: TaskStore) -> ReviewController:
        return ReviewController(
            store.controller,
            min_interval=self.settings.review.min_interval,
            max_interval=self.settings.review.max_interval,
            max_probe_interval=self.settings.review.max_probe_interval,
            regression_threshold=self.settings.review.regression_threshold,
        )

    def _resolve_and_score(self, store: TaskStore, summary: LoopRunSummary) -> None:
        resolution = resolve_dependencies(store)
        summary.unblocked += len(resolution.unblocked)
        score_all(store, now=self._clock())

    def _curator_due(self, cycle: int) -> bool:
        every = self.settings.loop.curator_every
        return every > 0 and cycle % every == 0

    def _should_run_initializer(self, *, resume: bool) -> bool:
        if resume or not self.settings.loop.run_initializer:
            return False
        return not (self.settings.workdir / self.settings.loop.progress_file).exists()

    def _save(self, store: TaskStore) -> None:
        save_store(self.store_path, store, now=self._clock())

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _revert_unearned_completions(store: TaskStore, completed_before: set[str]) -> None:
    """Undo completions made without a moved pointer."""

    for task_id in sorted(store.completed_ids() - completed_before):
        task = store.get(task_id)
        logger.warning("Task %s marked complete without a commit, reverting to pending", task_id)
        task.status = TaskStatus.PENDING
        task.completed_at = None
