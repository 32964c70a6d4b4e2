"""Domain models for the task store and control loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class RalphLoopError(RuntimeError):
    """Base error for the control loop."""


class TaskStoreError(RalphLoopError):
    """Task store could not be read, parsed or mutated."""


class InvalidTransitionError(TaskStoreError):
    """Requested task status transition is not allowed."""


class UnknownTaskError(TaskStoreError):
    """Task id is not present in the store."""


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETE = "complete"

    def can_transition_to(self, target: TaskStatus) -> bool:
        """Whether the state machine allows moving from this status to target."""

        return target in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.BLOCKED: frozenset({TaskStatus.PENDING}),
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.COMPLETE}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.PENDING, TaskStatus.COMPLETE}),
    TaskStatus.COMPLETE: frozenset(),
}


class TaskPriority(str, Enum):
    """Known priority levels; anything else scores as NORMAL."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    NORMAL = "normal"
    LOW = "low"


class FailureKind(str, Enum):
    """Normalized worker failure kinds used by the circuit breaker."""

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    CONCURRENCY = "concurrency"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"
    LAUNCH_ERROR = "launch_error"
    NO_PROGRESS = "no_progress"


class CycleOutcome(str, Enum):
    """Classification of one worker invocation."""

    PROGRESS = "progress"
    PARTIAL = "partial"
    FAILURE = "failure"


class BreakerState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    TRIPPED = "tripped"


class StopReason(str, Enum):
    """Why the supervisor loop ended."""

    DRAINED = "drained"
    TRIPPED = "tripped"
    TIME_LIMIT = "time_limit"
    ITERATION_LIMIT = "iteration_limit"
    INTERRUPTED = "interrupted"
    VALIDATION_FAILED = "validation_failed"
    ROLLBACK_FAILED = "rollback_failed"

    @property
    def exit_code(self) -> int:
        """Process exit code for this stop reason."""

        if self in _CLEAN_STOPS:
            return 0
        return 1


_CLEAN_STOPS = frozenset(
    {
        StopReason.DRAINED,
        StopReason.TIME_LIMIT,
        StopReason.ITERATION_LIMIT,
        StopReason.INTERRUPTED,
    },
)


@dataclass(slots=True)
class Task:
    """One node of the hierarchical task tree."""

    task_id: str
    task_type: str
    title: str
    status: TaskStatus
    priority: str | None = None
    description: str = ""
    blocked_by: list[str] = field(default_factory=list)
    score: int = 0
    created_at: datetime | None = None
    completed_at: datetime | None = None
    subtasks: list[Task] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def transition(self, target: TaskStatus) -> None:
        """Move to target status or raise InvalidTransitionError."""

        if self.status == target:
            return
        if not self.status.can_transition_to(target):
            raise InvalidTransitionError(
                f"Task {self.task_id}: transition {self.status.value} -> {target.value} "
                "is not allowed.",
            )
        self.status = target

    @property
    def is_eligible(self) -> bool:
        """Pending with no outstanding blockers."""

        return self.status == TaskStatus.PENDING and not self.blocked_by


@dataclass(slots=True)
class StoreStats:
    """Aggregate per-status counts over the whole task tree."""

    pending: int = 0
    in_progress: int = 0
    complete: int = 0
    blocked: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.in_progress + self.complete + self.blocked

    def to_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "inProgress": self.in_progress,
            "complete": self.complete,
            "blocked": self.blocked,
            "total": self.total,
        }


@dataclass(slots=True)
class CheckpointState:
    """Circuit breaker counters and the last safe rollback point."""

    last_good_commit: str | None = None
    last_successful_task: str | None = None
    last_checkpoint: datetime | None = None
    consecutive_failures: int = 0
    failed_attempts: int = 0
    circuit_breaker_tripped: bool = False
    interrupted_at: str | None = None


@dataclass(slots=True)
class IssueSample:
    """One recorded Issue Probe score."""

    timestamp: datetime
    issue_score: int


@dataclass(slots=True)
class ControllerState:
    """Process-wide loop counters, persisted with the store across restarts."""

    iteration: int = 0
    current_interval: int = 6
    last_review_iteration: int = 0
    last_probe_iteration: int = 0
    issues_history: list[IssueSample] = field(default_factory=list)
    prev_issue_score: int | None = None
    backoff_seconds: float = 0.0
