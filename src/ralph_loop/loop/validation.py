"""Structural validation of the raw task store document."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ralph_loop.loop.common import from_iso
from ralph_loop.loop.models import StoreStats, TaskStatus, TaskStoreError

REQUIRED_TASK_FIELDS: tuple[str, ...] = ("id", "type", "title", "status")
VALID_STATUSES: tuple[str, ...] = tuple(status.value for status in TaskStatus)

_WHITE = 0
_GRAY = 1
_BLACK = 2


@dataclass(slots=True)
class ValidationReport:
    """Validation findings for one store document."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    stats_mismatch: list[str] = field(default_factory=list)
    counts: StoreStats = field(default_factory=StoreStats)

    @property
    def is_valid(self) -> bool:
        """No structural or dependency errors."""

        return not self.errors

    @property
    def is_consistent(self) -> bool:
        """Valid and stored stats match a fresh recursive count."""

        return self.is_valid and not self.stats_mismatch


class StoreValidationError(TaskStoreError):
    """Store document failed structural validation."""

    def __init__(self, report: ValidationReport) -> None:
        preview = "; ".join(report.errors[:3])
        more = f" (+{len(report.errors) - 3} more)" if len(report.errors) > 3 else ""
        super().__init__(f"Task store is invalid: {preview}{more}")
        self.report = report


def validate_document(raw: object) -> ValidationReport:
    """Check structure, dependency references, acyclicity and stats."""

    report = ValidationReport()
    if not isinstance(raw, dict):
        report.errors.append("Task store must be a JSON object.")
        return report

    tasks = raw.get("tasks")
    if not isinstance(tasks, list):
        report.errors.append("Task store must contain a tasks array.")
        return report

    for index, task in enumerate(tasks):
        _validate_task_structure(task, report.errors, parent_path="", index=index)

    graph = _build_dependency_graph(tasks, report.errors)
    _check_dependency_references(graph, report.errors)
    for cycle in find_dependency_cycles(graph):
        report.errors.append(f"Circular dependency detected: {' -> '.join(cycle)}")

    report.counts = count_statuses(tasks)
    _compare_stats(raw.get("stats"), report)

    checkpoints = raw.get("checkpoints")
    if checkpoints is not None and not isinstance(checkpoints, dict):
        report.errors.append("checkpoints must be an object when provided.")
    controller = raw.get("controller")
    if controller is not None and not isinstance(controller, dict):
        report.errors.append("controller must be an object when provided.")
    return report


def count_statuses(tasks: list[Any]) -> StoreStats:
    """Count task statuses recursively over raw task dicts."""

    stats = StoreStats()
    for task in tasks:
        if not isinstance(task, dict):
            continue
        status = task.get("status")
        if status == TaskStatus.PENDING.value:
            stats.pending += 1
        elif status == TaskStatus.IN_PROGRESS.value:
            stats.in_progress += 1
        elif status == TaskStatus.COMPLETE.value:
            stats.complete += 1
        elif status == TaskStatus.BLOCKED.value:
            stats.blocked += 1
        subtasks = task.get("subtasks")
        if isinstance(subtasks, list):
            sub = count_statuses(subtasks)
            stats.pending += sub.pending
            stats.in_progress += sub.in_progress
            stats.complete += sub.complete
            stats.blocked += sub.blocked
    return stats


def find_dependency_cycles(graph: dict[str, list[str]]) -> list[list[str]]:
    """Return dependency cycles as id paths closing on their first node."""

    color = dict.fromkeys(graph, _WHITE)
    cycles: list[list[str]] = []
    for start in graph:
        if color[start] != _WHITE:
            continue
        color[start] = _GRAY
        path = [start]
        stack = [(start, iter(graph[start]))]
        while stack:
            node, deps = stack[-1]
            for dep in deps:
                if dep not in graph:
                    continue
                if color[dep] == _GRAY:
                    cycles.append([*path[path.index(dep) :], dep])
                elif color[dep] == _WHITE:
                    color[dep] = _GRAY
                    path.append(dep)
                    stack.append((dep, iter(graph[dep])))
                    break
            else:
                color[node] = _BLACK
                path.pop()
                stack.pop()
    return cycles


def _validate_task_structure(
    task: object,
    errors: list[str],
    *,
    parent_path: str,
    index: int,
) -> None:
    if not isinstance(task, dict):
        location = f"{parent_path}[{index}]" if parent_path else f"tasks[{index}]"
        errors.append(f"{location}: task must be an object")
        return

    task_id = task.get("id")
    label = task_id if isinstance(task_id, str) and task_id else f"#{index}"
    task_path = f"{parent_path}.{label}" if parent_path else label

    for field_name in REQUIRED_TASK_FIELDS:
        value = task.get(field_name)
        if not isinstance(value, str) or not value.strip():
            errors.append(f"{task_path}: Missing {field_name}")

    status = task.get("status")
    if isinstance(status, str) and status and status not in VALID_STATUSES:
        errors.append(f'{task_path}: Invalid status "{status}"')

    blocked_by = task.get("blockedBy")
    if blocked_by is not None and (
        not isinstance(blocked_by, list) or not all(isinstance(item, str) for item in blocked_by)
    ):
        errors.append(f"{task_path}: blockedBy must be an array of task ids")
    elif status == TaskStatus.BLOCKED.value and not blocked_by:
        errors.append(f"{task_path}: Status is blocked but no blockedBy specified")

    for field_name in ("createdAt", "completedAt"):
        value = task.get(field_name)
        if value is None:
            continue
        if not isinstance(value, str) or not _is_iso_timestamp(value):
            errors.append(f"{task_path}: {field_name} must be an ISO timestamp string")

    subtasks = task.get("subtasks")
    if subtasks is None:
        return
    if not isinstance(subtasks, list):
        errors.append(f"{task_path}: subtasks must be an array")
        return
    for sub_index, subtask in enumerate(subtasks):
        _validate_task_structure(subtask, errors, parent_path=task_path, index=sub_index)


def _build_dependency_graph(tasks: list[Any], errors: list[str]) -> dict[str, list[str]]:
    graph: dict[str, list[str]] = {}

    def _collect(task_list: list[Any]) -> None:
        for task in task_list:
            if not isinstance(task, dict):
                continue
            task_id = task.get("id")
            if isinstance(task_id, str) and task_id:
                if task_id in graph:
                    errors.append(f'Duplicate task id "{task_id}"')
                blocked_by = task.get("blockedBy")
                graph[task_id] = (
                    [item for item in blocked_by if isinstance(item, str)]
                    if isinstance(blocked_by, list)
                    else []
                )
            subtasks = task.get("subtasks")
            if isinstance(subtasks, list):
                _collect(subtasks)

    _collect(tasks)
    return graph


def _check_dependency_references(graph: dict[str, list[str]], errors: list[str]) -> None:
    for task_id, blockers in graph.items():
        for blocker_id in blockers:
            if blocker_id not in graph:
                errors.append(f'{task_id}: blockedBy references non-existent task "{blocker_id}"')


def _compare_stats(stored: object, report: ValidationReport) -> None:
    counts = report.counts
    if stored is None:
        report.stats_mismatch.append("stats block is missing")
        return
    if not isinstance(stored, dict):
        report.errors.append("stats must be an object.")
        return
    expected = {
        "pending": counts.pending,
        "inProgress": counts.in_progress,
        "complete": counts.complete,
        "blocked": counts.blocked,
    }
    for key, value in expected.items():
        if stored.get(key) != value:
            report.stats_mismatch.append(f"{key}: {stored.get(key)} vs {value}")


def _is_iso_timestamp(value: str) -> bool:
    try:
        from_iso(value)
    except ValueError:
        return False
    return True
