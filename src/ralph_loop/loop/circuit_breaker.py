"""Consecutive-failure circuit breaker with checkpoint-based store recovery."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from ralph_loop.loop.models import (
    BreakerState,
    CheckpointState,
    ControllerState,
    RalphLoopError,
)
from ralph_loop.loop.vcs import OracleError, ProgressOracle

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_FAILURES = 3
BACKOFF_FLOOR_SECONDS = 5.0
BACKOFF_CEILING_SECONDS = 300.0


class RollbackFailedError(RalphLoopError):
    """Store could not be restored from the last good checkpoint."""


class CircuitBreaker:
    """Track consecutive failures over persisted checkpoint/controller state.

    Tripping is sticky: nothing in a run closes the breaker again except an
    explicit ``reset()``.
    """

    def __init__(
        self,
        checkpoints: CheckpointState,
        controller: ControllerState,
        *,
        max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES,
        backoff_floor_seconds: float = BACKOFF_FLOOR_SECONDS,
        backoff_ceiling_seconds: float = BACKOFF_CEILING_SECONDS,
    ) -> None:
        self.checkpoints = checkpoints
        self.controller = controller
        self.max_consecutive_failures = max_consecutive_failures
        self.backoff_floor_seconds = backoff_floor_seconds
        self.backoff_ceiling_seconds = backoff_ceiling_seconds

    @property
    def state(self) -> BreakerState:
        if self.checkpoints.circuit_breaker_tripped:
            return BreakerState.TRIPPED
        return BreakerState.CLOSED

    def record_success(self, pointer: str, task_label: str, *, now: datetime) -> None:
        """Advance the checkpoint to a state that passed the progress check."""

        self.checkpoints.consecutive_failures = 0
        self.controller.backoff_seconds = self.backoff_floor_seconds
        if pointer:
            self.checkpoints.last_good_commit = pointer
        self.checkpoints.last_successful_task = task_label
        self.checkpoints.last_checkpoint = now

    def record_failure(self) -> float:
        """Count one failure and return the backoff delay before the next cycle."""

        self.checkpoints.consecutive_failures += 1
        self.checkpoints.failed_attempts += 1
        delay = self._compute_backoff(failure_number=self.checkpoints.consecutive_failures)
        self.controller.backoff_seconds = min(self.backoff_ceiling_seconds, delay * 2)
        logger.warning(
            "Failure %d/%d, backing off %.1fs",
            self.checkpoints.consecutive_failures,
            self.max_consecutive_failures,
            delay,
        )
        return delay

    def evaluate(self) -> bool:
        """Trip once consecutive failures reach the threshold; return tripped flag."""

        if (
            not self.checkpoints.circuit_breaker_tripped
            and self.checkpoints.consecutive_failures >= self.max_consecutive_failures
        ):
            self.checkpoints.circuit_breaker_tripped = True
            logger.error(
                "Circuit breaker tripped after %d consecutive failures (last good commit: %s)",
                self.checkpoints.consecutive_failures,
                self.checkpoints.last_good_commit or "none",
            )
        return self.checkpoints.circuit_breaker_tripped

    def reset(self) -> None:
        self.checkpoints.consecutive_failures = 0
        self.checkpoints.circuit_breaker_tripped = False
        self.controller.backoff_seconds = self.backoff_floor_seconds
        logger.info("Circuit breaker reset")

    def _compute_backoff(self, *, failure_number: int) -> float:
        return min(
            self.backoff_ceiling_seconds,
            self.backoff_floor_seconds * (2 ** max(failure_number - 1, 0)),
        )


def recover_store(store_path: Path, oracle: ProgressOracle, checkpoints: CheckpointState) -> str:
    """Restore the store file from ``lastGoodCommit`` and return that pointer."""

    pointer = checkpoints.last_good_commit
    if not pointer:
        raise RollbackFailedError(
            f"Task store {store_path} is corrupted and no last good commit is recorded.",
        )
    try:
        oracle.rollback(pointer, [store_path])
    except OracleError as error:
        raise RollbackFailedError(
            f"Rollback of {store_path} to {pointer} failed: {error}",
        ) from error
    return pointer
