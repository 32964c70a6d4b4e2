"""Dependency resolution: prune satisfied blockers and unblock tasks."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ralph_loop.loop.models import TaskStatus
from ralph_loop.loop.store import TaskStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ResolutionResult:
    """What one resolver pass changed."""

    unblocked: list[str] = field(default_factory=list)
    pruned_edges: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.unblocked) or self.pruned_edges > 0


def resolve_dependencies(store: TaskStore) -> ResolutionResult:
    """Drop completed ids from every blockedBy and promote emptied blocked tasks.

    A second pass with no intervening completion changes nothing.
    """

    completed = store.completed_ids()
    result = ResolutionResult()
    for task in store.iter_tasks():
        if task.blocked_by:
            remaining = [blocker for blocker in task.blocked_by if blocker not in completed]
            result.pruned_edges += len(task.blocked_by) - len(remaining)
            task.blocked_by = remaining
        if task.status == TaskStatus.BLOCKED and not task.blocked_by:
            task.transition(TaskStatus.PENDING)
            result.unblocked.append(task.task_id)
            logger.info("Unblocked task %s", task.task_id)
    return result
