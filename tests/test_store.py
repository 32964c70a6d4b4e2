from __future__ import annotations

import json
from datetime import UTC, datetime

import allure
import pytest

from ralph_loop.loop.models import (
    InvalidTransitionError,
    IssueSample,
    TaskStatus,
    UnknownTaskError,
)
from ralph_loop.loop.store import (
    StoreCorruptedError,
    content_hash,
    fix_stats,
    load_store,
    save_store,
    write_json_atomic,
)
from ralph_loop.loop.validation import StoreValidationError

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Persistence"),
]

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def test_load_builds_tree_index_and_preserves_extra_keys(write_store, task_dict) -> None:
    path = write_store(
        [
            task_dict(
                "ch01",
                priority="high",
                chapter=1,
                file="chapters/ch01.md",
                createdAt="2026-02-01T00:00:00Z",
                subtasks=[task_dict("ch01-diagram", type="diagram", parentId="ch01")],
            ),
            task_dict("ch02", status="blocked", blockedBy=["ch01"]),
        ],
        curatorNotes="keep chapters short",
        bookTitle="Compound Engineering",
    )

    store = load_store(path)

    assert [task.task_id for task in store.iter_tasks()] == ["ch01", "ch01-diagram", "ch02"]
    assert store.get("ch01-diagram").extra == {"parentId": "ch01"}
    assert store.get("ch01").created_at == datetime(2026, 2, 1, tzinfo=UTC)
    assert store.curator_notes == "keep chapters short"

    save_store(path, store, now=NOW)
    payload = json.loads(path.read_text("utf-8"))

    assert payload["bookTitle"] == "Compound Engineering"
    assert payload["tasks"][0]["chapter"] == 1
    assert payload["tasks"][0]["file"] == "chapters/ch01.md"
    assert payload["tasks"][0]["subtasks"][0]["parentId"] == "ch01"
    assert payload["tasks"][1]["blockedBy"] == ["ch01"]
    assert payload["lastUpdated"] == "2026-03-01T12:00:00Z"


def test_save_recomputes_stats_recursively(write_store, task_dict) -> None:
    path = write_store(
        [
            task_dict("a", status="complete", subtasks=[task_dict("a1"), task_dict("a2")]),
            task_dict("b", status="blocked", blockedBy=["a1"]),
        ],
        stats={"pending": 0, "inProgress": 0, "complete": 0, "blocked": 0, "total": 0},
    )

    store = load_store(path)
    save_store(path, store, now=NOW)
    payload = json.loads(path.read_text("utf-8"))

    assert payload["stats"] == {
        "pending": 2,
        "inProgress": 0,
        "complete": 1,
        "blocked": 1,
        "total": 4,
    }


def test_checkpoint_and_controller_state_round_trip(write_store, task_dict) -> None:
    path = write_store([task_dict("a")])
    store = load_store(path)
    store.checkpoints.last_good_commit = "abc123"
    store.checkpoints.consecutive_failures = 2
    store.checkpoints.failed_attempts = 9
    store.checkpoints.last_checkpoint = NOW
    store.controller.iteration = 17
    store.controller.current_interval = 11
    store.controller.prev_issue_score = 4
    store.controller.issues_history.append(IssueSample(timestamp=NOW, issue_score=4))

    save_store(path, store, now=NOW)
    reloaded = load_store(path)

    assert reloaded.checkpoints.last_good_commit == "abc123"
    assert reloaded.checkpoints.consecutive_failures == 2
    assert reloaded.checkpoints.failed_attempts == 9
    assert reloaded.checkpoints.last_checkpoint == NOW
    assert reloaded.controller.iteration == 17
    assert reloaded.controller.current_interval == 11
    assert reloaded.controller.prev_issue_score == 4
    assert reloaded.controller.issues_history == [IssueSample(timestamp=NOW, issue_score=4)]


def test_invalid_json_raises_corrupted_error(tmp_path) -> None:
    path = tmp_path / "tasks.json"
    path.write_text('{"tasks": [', "utf-8")

    with pytest.raises(StoreCorruptedError, match="not valid JSON"):
        load_store(path)


def test_missing_store_raises_corrupted_error(tmp_path) -> None:
    with pytest.raises(StoreCorruptedError, match="not found"):
        load_store(tmp_path / "missing.json")


def test_structural_errors_raise_validation_error(write_store, task_dict) -> None:
    path = write_store([task_dict("a", status="done")])

    with pytest.raises(StoreValidationError) as error:
        load_store(path)

    assert 'a: Invalid status "done"' in error.value.report.errors


def test_atomic_write_leaves_no_temp_files(tmp_path) -> None:
    path = tmp_path / "nested" / "tasks.json"

    write_json_atomic(path, {"tasks": []})
    write_json_atomic(path, {"tasks": [], "curatorNotes": "second"})

    assert json.loads(path.read_text("utf-8"))["curatorNotes"] == "second"
    assert [entry.name for entry in path.parent.iterdir()] == ["tasks.json"]


def test_content_hash_tracks_bytes(tmp_path) -> None:
    path = tmp_path / "tasks.json"
    assert content_hash(path) == ""

    path.write_text("{}", "utf-8")
    first = content_hash(path)
    path.write_text('{"a": 1}', "utf-8")

    assert first != content_hash(path)
    assert len(first) == 64


def test_fix_stats_rewrites_only_stats(write_store, task_dict) -> None:
    tasks = [task_dict("a", status="complete", description="keep me"), task_dict("b")]
    path = write_store(tasks, stats={"pending": 5, "inProgress": 0, "complete": 0, "blocked": 0})

    report = fix_stats(path, now=NOW)
    payload = json.loads(path.read_text("utf-8"))

    assert report.stats_mismatch
    assert payload["tasks"] == tasks
    assert payload["stats"]["pending"] == 1
    assert payload["stats"]["complete"] == 1
    assert payload["lastUpdated"] == "2026-03-01T12:00:00Z"


def test_unknown_task_lookup_raises(write_store, task_dict) -> None:
    store = load_store(write_store([task_dict("a")]))

    assert store.find("zzz") is None
    with pytest.raises(UnknownTaskError):
        store.get("zzz")


def test_complete_is_terminal(write_store, task_dict) -> None:
    store = load_store(write_store([task_dict("a", status="complete")]))

    with pytest.raises(InvalidTransitionError):
        store.get("a").transition(TaskStatus.PENDING)


def test_blocked_cannot_jump_to_in_progress(write_store, task_dict) -> None:
    store = load_store(
        write_store([task_dict("a"), task_dict("b", status="blocked", blockedBy=["a"])]),
    )

    with pytest.raises(InvalidTransitionError):
        store.get("b").transition(TaskStatus.IN_PROGRESS)
