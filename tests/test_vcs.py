from __future__ import annotations

import allure
import pytest

from ralph_loop.loop.vcs import GitProgressOracle, OracleError

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Progress Oracle"),
]


def test_pointer_moves_only_on_commit(git_repo, run_git) -> None:
    oracle = GitProgressOracle(git_repo)
    before = oracle.current_pointer()

    (git_repo / "ch01.md").write_text("draft\n", "utf-8")
    assert oracle.current_pointer() == before

    run_git(git_repo, "add", "-A")
    run_git(git_repo, "commit", "-q", "-m", "ch01")
    after = oracle.current_pointer()

    assert after == run_git(git_repo, "rev-parse", "HEAD")
    assert oracle.pointers_differ(before, after)
    assert not oracle.pointers_differ(after, after)


def test_unborn_head_returns_empty_pointer(tmp_path, run_git, git_repo) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()
    run_git(empty, "init", "-q")

    assert GitProgressOracle(empty).current_pointer() == ""


def test_rollback_restores_file_content(git_repo, run_git) -> None:
    store = git_repo / "tasks.json"
    store.write_text('{"tasks": []}\n', "utf-8")
    run_git(git_repo, "add", "-A")
    run_git(git_repo, "commit", "-q", "-m", "store")
    oracle = GitProgressOracle(git_repo)
    pointer = oracle.current_pointer()

    store.write_text("{ corrupted", "utf-8")
    oracle.rollback(pointer, [store])

    assert store.read_text("utf-8") == '{"tasks": []}\n'


def test_rollback_of_untracked_path_raises(git_repo) -> None:
    oracle = GitProgressOracle(git_repo)

    with pytest.raises(OracleError, match="checkout"):
        oracle.rollback(oracle.current_pointer(), [git_repo / "never-committed.json"])


def test_rollback_requires_pointer(git_repo) -> None:
    with pytest.raises(OracleError):
        GitProgressOracle(git_repo).rollback("", [git_repo / "README.md"])


def test_outside_repository_raises(tmp_path, git_repo) -> None:
    outside = tmp_path / "plain"
    outside.mkdir()

    with pytest.raises(OracleError):
        GitProgressOracle(outside).current_pointer()
