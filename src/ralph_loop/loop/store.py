"""JSON-file task store: parsing, atomic persistence and tree index."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from ralph_loop.loop.common import from_iso, to_iso, utc_now
from ralph_loop.loop.models import (
    CheckpointState,
    ControllerState,
    IssueSample,
    StoreStats,
    Task,
    TaskStatus,
    TaskStoreError,
    UnknownTaskError,
)
from ralph_loop.loop.validation import (
    StoreValidationError,
    ValidationReport,
    validate_document,
)

logger = logging.getLogger(__name__)

ISSUES_HISTORY_LIMIT = 100

_KNOWN_TASK_KEYS = frozenset(
    {
        "id",
        "type",
        "title",
        "status",
        "priority",
        "description",
        "blockedBy",
        "score",
        "createdAt",
        "completedAt",
        "subtasks",
    },
)
_KNOWN_STORE_KEYS = frozenset(
    {"tasks", "stats", "checkpoints", "controller", "curatorNotes", "lastUpdated"},
)


class StoreCorruptedError(TaskStoreError):
    """Store file is missing, unreadable or not a JSON object."""


@dataclass(slots=True)
class TaskStore:
    """In-memory task tree with an id index and attached loop state."""

    tasks: list[Task] = field(default_factory=list)
    stats: StoreStats = field(default_factory=StoreStats)
    checkpoints: CheckpointState = field(default_factory=CheckpointState)
    controller: ControllerState = field(default_factory=ControllerState)
    curator_notes: str | None = None
    last_updated: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    _index: dict[str, Task] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.reindex()

    def reindex(self) -> None:
        """Rebuild the id index after the tree was replaced or extended."""

        self._index = {task.task_id: task for task in self.iter_tasks()}

    def iter_tasks(self) -> Iterator[Task]:
        """Walk the task tree depth-first in document order."""

        stack = list(reversed(self.tasks))
        while stack:
            task = stack.pop()
            yield task
            stack.extend(reversed(task.subtasks))

    def get(self, task_id: str) -> Task:
        task = self._index.get(task_id)
        if task is None:
            raise UnknownTaskError(f"Task {task_id} is not present in the store.")
        return task

    def find(self, task_id: str) -> Task | None:
        return self._index.get(task_id)

    def completed_ids(self) -> set[str]:
        return {task.task_id for task in self.iter_tasks() if task.status == TaskStatus.COMPLETE}

    def recompute_stats(self) -> StoreStats:
        """Recount statuses over the whole tree and store the result."""

        stats = StoreStats()
        for task in self.iter_tasks():
            if task.status == TaskStatus.PENDING:
                stats.pending += 1
            elif task.status == TaskStatus.IN_PROGRESS:
                stats.in_progress += 1
            elif task.status == TaskStatus.COMPLETE:
                stats.complete += 1
            else:
                stats.blocked += 1
        self.stats = stats
        return stats


def read_store_json(path: Path) -> dict[str, Any]:
    """Read the raw store document or raise StoreCorruptedError."""

    try:
        text = path.read_text("utf-8")
    except FileNotFoundError as error:
        raise StoreCorruptedError(f"Task store not found: {path}") from error
    except OSError as error:
        raise StoreCorruptedError(f"Task store is unreadable: {path}: {error}") from error
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise StoreCorruptedError(f"Task store is not valid JSON: {path}: {error}") from error
    if not isinstance(payload, dict):
        raise StoreCorruptedError(f"Task store must be a JSON object: {path}")
    return payload


def load_store(path: Path, *, validate: bool = True) -> TaskStore:
    """Load and optionally validate the store file."""

    raw = read_store_json(path)
    if validate:
        report = validate_document(raw)
        if not report.is_valid:
            raise StoreValidationError(report)
        if report.stats_mismatch:
            logger.warning(
                "Stored stats differ from task counts, recomputing on save: %s",
                ", ".join(report.stats_mismatch),
            )
    return store_from_dict(raw)


def save_store(path: Path, store: TaskStore, *, now: datetime | None = None) -> None:
    """Recompute stats and atomically persist the store."""

    store.recompute_stats()
    store.last_updated = now or utc_now()
    write_json_atomic(path, store_to_dict(store))


def fix_stats(path: Path, *, now: datetime | None = None) -> ValidationReport:
    """Rewrite only the stats block when it disagrees with task counts."""

    raw = read_store_json(path)
    report = validate_document(raw)
    if report.stats_mismatch and isinstance(raw.get("tasks"), list):
        raw["stats"] = report.counts.to_dict()
        raw["lastUpdated"] = to_iso(now or utc_now())
        write_json_atomic(path, raw)
        logger.info("Recomputed stats for %s", path)
    return report


def content_hash(path: Path) -> str:
    """SHA-256 of the store bytes on disk; empty when the file is missing."""

    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except FileNotFoundError:
        return ""


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Write JSON via temp file, fsync and rename in the target directory."""

    text = json.dumps(payload, indent=2, ensure_ascii=False) + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


def store_from_dict(raw: dict[str, Any]) -> TaskStore:
    tasks = [_task_from_dict(item) for item in raw.get("tasks", []) if isinstance(item, dict)]
    curator_notes = raw.get("curatorNotes")
    return TaskStore(
        tasks=tasks,
        stats=_stats_from_dict(raw.get("stats")),
        checkpoints=_checkpoints_from_dict(raw.get("checkpoints")),
        controller=_controller_from_dict(raw.get("controller")),
        curator_notes=curator_notes if isinstance(curator_notes, str) else None,
        last_updated=_parse_timestamp(raw.get("lastUpdated")),
        extra={key: value for key, value in raw.items() if key not in _KNOWN_STORE_KEYS},
    )


def store_to_dict(store: TaskStore) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "tasks": [_task_to_dict(task) for task in store.tasks],
        "stats": store.stats.to_dict(),
        "checkpoints": _checkpoints_to_dict(store.checkpoints),
        "controller": _controller_to_dict(store.controller),
    }
    if store.curator_notes is not None:
        payload["curatorNotes"] = store.curator_notes
    if store.last_updated is not None:
        payload["lastUpdated"] = to_iso(store.last_updated)
    payload.update(store.extra)
    return payload


def _task_from_dict(raw: dict[str, Any]) -> Task:
    extra = {key: value for key, value in raw.items() if key not in _KNOWN_TASK_KEYS}
    created_at = _parse_timestamp(raw.get("createdAt"))
    if created_at is None and raw.get("createdAt") is not None:
        extra["createdAt"] = raw["createdAt"]
    completed_at = _parse_timestamp(raw.get("completedAt"))
    if completed_at is None and raw.get("completedAt") is not None:
        extra["completedAt"] = raw["completedAt"]

    priority = raw.get("priority")
    description = raw.get("description")
    blocked_by = raw.get("blockedBy")
    score = raw.get("score")
    subtasks = raw.get("subtasks")
    return Task(
        task_id=str(raw.get("id", "")),
        task_type=str(raw.get("type", "")),
        title=str(raw.get("title", "")),
        status=TaskStatus(raw.get("status", TaskStatus.PENDING.value)),
        priority=priority if isinstance(priority, str) else None,
        description=description if isinstance(description, str) else "",
        blocked_by=[item for item in blocked_by if isinstance(item, str)]
        if isinstance(blocked_by, list)
        else [],
        score=score if isinstance(score, int) and not isinstance(score, bool) else 0,
        created_at=created_at,
        completed_at=completed_at,
        subtasks=[_task_from_dict(item) for item in subtasks if isinstance(item, dict)]
        if isinstance(subtasks, list)
        else [],
        extra=extra,
    )


def _task_to_dict(task: Task) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": task.task_id,
        "type": task.task_type,
        "title": task.title,
        "status": task.status.value,
    }
    if task.priority is not None:
        payload["priority"] = task.priority
    if task.description:
        payload["description"] = task.description
    if task.blocked_by:
        payload["blockedBy"] = list(task.blocked_by)
    payload["score"] = task.score
    if task.created_at is not None:
        payload["createdAt"] = to_iso(task.created_at)
    if task.completed_at is not None:
        payload["completedAt"] = to_iso(task.completed_at)
    if task.subtasks:
        payload["subtasks"] = [_task_to_dict(subtask) for subtask in task.subtasks]
    payload.update(task.extra)
    return payload


def _stats_from_dict(raw: object) -> StoreStats:
    if not isinstance(raw, dict):
        return StoreStats()
    return StoreStats(
        pending=_coerce_int(raw.get("pending"), default=0),
        in_progress=_coerce_int(raw.get("inProgress"), default=0),
        complete=_coerce_int(raw.get("complete"), default=0),
        blocked=_coerce_int(raw.get("blocked"), default=0),
    )


def _checkpoints_from_dict(raw: object) -> CheckpointState:
    if not isinstance(raw, dict):
        return CheckpointState()
    return CheckpointState(
        last_good_commit=_optional_str(raw.get("lastGoodCommit")),
        last_successful_task=_optional_str(raw.get("lastSuccessfulTask")),
        last_checkpoint=_parse_timestamp(raw.get("lastCheckpoint")),
        consecutive_failures=_coerce_int(raw.get("consecutiveFailures"), default=0),
        failed_attempts=_coerce_int(raw.get("failedAttempts"), default=0),
        circuit_breaker_tripped=bool(raw.get("circuitBreakerTripped", False)),
        interrupted_at=_optional_str(raw.get("interruptedAt")),
    )


def _checkpoints_to_dict(checkpoints: CheckpointState) -> dict[str, Any]:
    return {
        "lastGoodCommit": checkpoints.last_good_commit,
        "lastSuccessfulTask": checkpoints.last_successful_task,
        "lastCheckpoint": to_iso(checkpoints.last_checkpoint)
        if checkpoints.last_checkpoint is not None
        else None,
        "consecutiveFailures": checkpoints.consecutive_failures,
        "failedAttempts": checkpoints.failed_attempts,
        "circuitBreakerTripped": checkpoints.circuit_breaker_tripped,
        "interruptedAt": checkpoints.interrupted_at,
    }


def _controller_from_dict(raw: object) -> ControllerState:
    if not isinstance(raw, dict):
        return ControllerState()
    defaults = ControllerState()
    history: list[IssueSample] = []
    for item in raw.get("issuesHistory") or []:
        if not isinstance(item, dict):
            continue
        timestamp = _parse_timestamp(item.get("timestamp"))
        score = item.get("issueScore")
        if timestamp is None or not isinstance(score, int):
            continue
        history.append(IssueSample(timestamp=timestamp, issue_score=score))
    prev = raw.get("prevIssueScore")
    backoff = raw.get("backoffSeconds")
    return ControllerState(
        iteration=_coerce_int(raw.get("iteration"), default=defaults.iteration),
        current_interval=_coerce_int(
            raw.get("currentInterval"),
            default=defaults.current_interval,
        ),
        last_review_iteration=_coerce_int(raw.get("lastReviewIteration"), default=0),
        last_probe_iteration=_coerce_int(raw.get("lastProbeIteration"), default=0),
        issues_history=history[-ISSUES_HISTORY_LIMIT:],
        prev_issue_score=prev if isinstance(prev, int) and not isinstance(prev, bool) else None,
        backoff_seconds=float(backoff) if isinstance(backoff, int | float) else 0.0,
    )


def _controller_to_dict(controller: ControllerState) -> dict[str, Any]:
    return {
        "iteration": controller.iteration,
        "currentInterval": controller.current_interval,
        "lastReviewIteration": controller.last_review_iteration,
        "lastProbeIteration": controller.last_probe_iteration,
        "issuesHistory": [
            {"timestamp": to_iso(sample.timestamp), "issueScore": sample.issue_score}
            for sample in controller.issues_history
        ],
        "prevIssueScore": controller.prev_issue_score,
        "backoffSeconds": controller.backoff_seconds,
    }


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return from_iso(value)
    except ValueError:
        return None


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _coerce_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default
