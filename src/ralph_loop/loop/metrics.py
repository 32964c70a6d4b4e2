"""Status snapshot of the task store and run summaries for CLI output."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime

from ralph_loop.loop.common import to_iso
from ralph_loop.loop.models import StoreStats, Task, TaskStatus
from ralph_loop.loop.scoring import rank_tasks, score_all, select_next_task
from ralph_loop.loop.store import TaskStore

FAILED_ATTEMPTS_WARNING = 5
BLOCKED_SHARE_WARNING = 0.5


@dataclass(slots=True)
class LoopRunSummary:
    """Aggregate loop counters for CLI reporting."""

    cycles: int = 0
    progress: int = 0
    partial: int = 0
    failures: int = 0
    reviews: int = 0
    curations: int = 0
    unblocked: int = 0


@dataclass(slots=True)
class StatusSnapshot:
    """Read-only projection of the store used by the status command."""

    stats: StoreStats
    percent_complete: float
    next_task: Task | None
    blocked_tasks: list[Task]
    type_counts: dict[str, int]
    warnings: list[str] = field(default_factory=list)


def build_status_snapshot(store: TaskStore, *, now: datetime) -> StatusSnapshot:
    """Recount and rescore in memory; the store file is not touched."""

    stats = store.recompute_stats()
    score_all(store, now=now)
    percent = (stats.complete / stats.total * 100.0) if stats.total else 0.0
    blocked = [task for task in store.iter_tasks() if task.status == TaskStatus.BLOCKED]
    type_counts = Counter(task.task_type for task in store.iter_tasks())

    warnings: list[str] = []
    checkpoints = store.checkpoints
    if checkpoints.circuit_breaker_tripped:
        warnings.append("Circuit breaker is TRIPPED; run `ralph-loop reset-breaker` to resume.")
    if checkpoints.failed_attempts >= FAILED_ATTEMPTS_WARNING:
        warnings.append(f"{checkpoints.failed_attempts} failed attempts recorded.")
    if stats.total and len(blocked) / stats.total > BLOCKED_SHARE_WARNING:
        warnings.append(f"{len(blocked)} of {stats.total} tasks are blocked.")
    if checkpoints.interrupted_at:
        warnings.append(f"Last run was {checkpoints.interrupted_at}.")

    return StatusSnapshot(
        stats=stats,
        percent_complete=percent,
        next_task=select_next_task(store),
        blocked_tasks=blocked,
        type_counts=dict(sorted(type_counts.items())),
        warnings=warnings,
    )


def render_status_lines(*, store: TaskStore, snapshot: StatusSnapshot) -> list[str]:
    """Render operator-facing status lines for CLI output."""

    stats = snapshot.stats
    checkpoints = store.checkpoints
    controller = store.controller
    lines = [
        f"Progress: {stats.complete}/{stats.total} complete ({snapshot.percent_complete:.1f}%)",
        (
            "Tasks: "
            f"pending={stats.pending} in_progress={stats.in_progress} "
            f"blocked={stats.blocked} complete={stats.complete}"
        ),
        "Types: " + (_fmt_key_value(snapshot.type_counts) or "none"),
        (
            "Next task: "
            + (
                f"{snapshot.next_task.task_id} (score={snapshot.next_task.score}) "
                f"{snapshot.next_task.title}"
                if snapshot.next_task is not None
                else "none"
            )
        ),
        (
            "Checkpoint: "
            f"last_good_commit={_short(checkpoints.last_good_commit)} "
            f"last_task={checkpoints.last_successful_task or '-'} "
            f"at={to_iso(checkpoints.last_checkpoint) if checkpoints.last_checkpoint else '-'}"
        ),
        (
            "Circuit breaker: "
            f"{'TRIPPED' if checkpoints.circuit_breaker_tripped else 'closed'} "
            f"consecutive_failures={checkpoints.consecutive_failures} "
            f"failed_attempts={checkpoints.failed_attempts}"
        ),
        (
            "Review controller: "
            f"iteration={controller.iteration} interval={controller.current_interval} "
            f"last_review={controller.last_review_iteration} "
            f"last_issue_score={_fmt_optional(controller.prev_issue_score)}"
        ),
    ]
    if snapshot.blocked_tasks:
        lines.append("Blocked:")
        for task in rank_tasks(snapshot.blocked_tasks):
            lines.append(f"  {task.task_id} <- {', '.join(task.blocked_by) or '-'}")
    for warning in snapshot.warnings:
        lines.append(f"WARNING: {warning}")
    return lines


def render_queue_lines(store: TaskStore, *, limit: int) -> list[str]:
    ranked = rank_tasks(
        task
        for task in store.iter_tasks()
        if task.status in (TaskStatus.PENDING, TaskStatus.BLOCKED)
    )
    lines = [f"Queue ({len(ranked)} open tasks):"]
    for position, task in enumerate(ranked[:limit], start=1):
        marker = "blocked" if task.status == TaskStatus.BLOCKED else "ready"
        lines.append(
            f"{position:>3}. [{task.score:>4}] {task.task_id} ({task.task_type}, {marker}) "
            f"{task.title}",
        )
    if len(ranked) > limit:
        lines.append(f"  ... {len(ranked) - limit} more")
    next_task = select_next_task(store)
    lines.append(f"Next task: {next_task.task_id if next_task is not None else 'none'}")
    return lines


def render_summary_line(summary: LoopRunSummary) -> str:
    return (
        "Loop summary: "
        f"cycles={summary.cycles} progress={summary.progress} partial={summary.partial} "
        f"failures={summary.failures} reviews={summary.reviews} "
        f"curations={summary.curations} unblocked={summary.unblocked}"
    )


def _fmt_key_value(values: dict[str, int]) -> str:
    return " ".join(f"{key}={value}" for key, value in values.items())


def _fmt_optional(value: int | None) -> str:
    return "-" if value is None else str(value)


def _short(pointer: str | None) -> str:
    if not pointer:
        return "-"
    return pointer[:12]
