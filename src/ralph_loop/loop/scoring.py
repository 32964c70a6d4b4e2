"""Task scoring and next-task selection."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from datetime import datetime, timedelta

from ralph_loop.loop.models import Task, TaskPriority, TaskStatus
from ralph_loop.loop.store import TaskStore

PRIORITY_WEIGHTS: dict[str, int] = {
    TaskPriority.CRITICAL.value: 1000,
    TaskPriority.HIGH.value: 750,
    TaskPriority.MEDIUM.value: 500,
    TaskPriority.NORMAL.value: 250,
    TaskPriority.LOW.value: 100,
}
TYPE_WEIGHTS: dict[str, int] = {
    "blocker": 200,
    "chapter": 100,
    "fix": 80,
    "kb-article": 60,
    "prd": 50,
    "diagram": 40,
    "infra": 30,
    "infrastructure": 30,
    "appendix": 20,
    "review": 10,
}
BLOCKING_BONUS_PER_DEPENDENT = 25
AGE_BONUS_STEPS: tuple[tuple[timedelta, int], ...] = (
    (timedelta(hours=24), 50),
    (timedelta(hours=48), 50),
)


def score_task(task: Task, all_tasks: Iterable[Task], *, now: datetime) -> int:
    """Score one task against the full task set.

    priority weight + type weight + 25 per task it blocks + age bonus.
    Unknown priorities score as ``normal``; unknown types contribute 0.
    """

    dependents = sum(1 for other in all_tasks if task.task_id in other.blocked_by)
    return _score(task, dependents=dependents, now=now)


def score_all(store: TaskStore, *, now: datetime) -> None:
    """Refresh the memoized score of every non-complete task in the tree."""

    dependents = _dependent_counts(store)
    for task in store.iter_tasks():
        if task.status == TaskStatus.COMPLETE:
            continue
        task.score = _score(task, dependents=dependents[task.task_id], now=now)


def eligible_tasks(store: TaskStore) -> list[Task]:
    return [task for task in store.iter_tasks() if task.is_eligible]


def rank_tasks(tasks: Iterable[Task]) -> list[Task]:
    """Order by score descending with task id as a stable tie-break."""

    return sorted(tasks, key=lambda task: (-task.score, task.task_id))


def select_next_task(store: TaskStore) -> Task | None:
    ranked = rank_tasks(eligible_tasks(store))
    if not ranked:
        return None
    return ranked[0]


def _score(task: Task, *, dependents: int, now: datetime) -> int:
    priority_weight = PRIORITY_WEIGHTS.get(
        task.priority or TaskPriority.NORMAL.value,
        PRIORITY_WEIGHTS[TaskPriority.NORMAL.value],
    )
    type_weight = TYPE_WEIGHTS.get(task.task_type, 0)
    return (
        priority_weight
        + type_weight
        + BLOCKING_BONUS_PER_DEPENDENT * dependents
        + _age_bonus(task.created_at, now=now)
    )


def _age_bonus(created_at: datetime | None, *, now: datetime) -> int:
    if created_at is None:
        return 0
    age = now - created_at
    return sum(bonus for threshold, bonus in AGE_BONUS_STEPS if age > threshold)


def _dependent_counts(store: TaskStore) -> Counter[str]:
    counts: Counter[str] = Counter()
    for task in store.iter_tasks():
        for blocker_id in set(task.blocked_by):
            counts[blocker_id] += 1
    return counts
