"""Shared test fixtures."""

from __future__ import annotations

import json
import shlex
import shutil
import subprocess
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

_ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m ralph_loop.loop.backend.echo_agent --prompt-file {{prompt_file}}"
)


@pytest.fixture()
def echo_command() -> str:
    """Command template running the deterministic echo agent."""

    return _ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def task_dict() -> Callable[..., dict[str, Any]]:
    """Build a raw task record with sensible defaults."""

    def _build(task_id: str, **fields: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": task_id,
            "type": fields.pop("type", "chapter"),
            "title": fields.pop("title", f"Task {task_id}"),
            "status": fields.pop("status", "pending"),
        }
        payload.update(fields)
        return payload

    return _build


@pytest.fixture()
def write_store(tmp_path: Path) -> Callable[..., Path]:
    """Write a store document under tmp_path and return its path."""

    def _write(
        tasks: list[dict[str, Any]],
        *,
        name: str = "tasks.json",
        stats: dict[str, int] | None = None,
        **extra: Any,
    ) -> Path:
        path = tmp_path / name
        payload: dict[str, Any] = {"tasks": tasks}
        payload["stats"] = stats if stats is not None else _count(tasks)
        payload.update(extra)
        path.write_text(json.dumps(payload, indent=2) + "\n", "utf-8")
        return path

    return _write


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Initialized git repository with one commit, or skip without git."""

    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")
    _git(repo, "config", "user.email", "loop@example.com")
    _git(repo, "config", "user.name", "Loop Tests")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# Book\n", "utf-8")
    _git(repo, "add", "-A")
    _git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture()
def run_git() -> Callable[..., str]:
    return _git


def _git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=repo,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def _count(tasks: list[dict[str, Any]]) -> dict[str, int]:
    counts = {"pending": 0, "inProgress": 0, "complete": 0, "blocked": 0}
    keys = {
        "pending": "pending",
        "in_progress": "inProgress",
        "complete": "complete",
        "blocked": "blocked",
    }
    stack = list(tasks)
    while stack:
        task = stack.pop()
        key = keys.get(task.get("status"))
        if key is not None:
            counts[key] += 1
        stack.extend(task.get("subtasks") or [])
    counts["total"] = sum(counts.values())
    return counts
