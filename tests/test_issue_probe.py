from __future__ import annotations

import allure

from ralph_loop.loop.issue_probe import MAX_FILE_BYTES, IssueProbe, IssueSeverity

pytestmark = [
    allure.epic("Review Cadence"),
    allure.feature("Issue Probe"),
]


def _write(root, relative: str, text: str):
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, "utf-8")
    return path


def test_clean_tree_scores_zero(tmp_path) -> None:
    _write(tmp_path, "chapters/ch01.md", "# Chapter one\n\nPlain prose.\n")

    report = IssueProbe(tmp_path).scan()

    assert report.files_scanned == 1
    assert report.findings == []
    assert report.score == 0


def test_severity_weights_sum_into_score(tmp_path) -> None:
    _write(
        tmp_path,
        "chapters/ch01.md",
        "\n".join(
            [
                "<<<<<<< HEAD",
                "Intro TODO expand this",
                "See [ref] for details.",
                "We delve into the topic.",
            ],
        ),
    )

    report = IssueProbe(tmp_path).scan()

    assert report.count(IssueSeverity.CRITICAL) == 1
    assert report.count(IssueSeverity.MEDIUM) == 2
    assert report.count(IssueSeverity.LOW) == 1
    assert report.score == 10 + 3 + 3 + 1
    assert report.by_rule() == {
        "merge_conflict_marker": 1,
        "todo_marker": 1,
        "unresolved_reference": 1,
        "slop_word": 1,
    }


def test_unbalanced_code_fence_is_critical(tmp_path) -> None:
    _write(tmp_path, "ch01.md", "Text\n```python\nprint('x')\n```\n\n```\nopen fence\n")

    report = IssueProbe(tmp_path).scan()

    assert [finding.rule for finding in report.findings] == ["unbalanced_code_fence"]
    assert report.findings[0].line == 6
    assert report.score == 10


def test_fenced_lines_are_still_scanned_but_fence_lines_are_not(tmp_path) -> None:
    _write(tmp_path, "ch01.md", "```TODO\ncode with FIXME\n```\n")

    report = IssueProbe(tmp_path).scan()

    assert [(finding.rule, finding.line) for finding in report.findings] == [("todo_marker", 2)]


def test_include_globs_and_skipped_directories(tmp_path) -> None:
    _write(tmp_path, "notes.txt", "TODO outside include\n")
    _write(tmp_path, "node_modules/pkg/README.md", "TODO vendored\n")
    _write(tmp_path, ".git/info.md", "TODO internal\n")
    _write(tmp_path, "book/ch02.md", "TODO real\n")

    report = IssueProbe(tmp_path).scan()

    assert report.files_scanned == 1
    assert [finding.path.name for finding in report.findings] == ["ch02.md"]

    wider = IssueProbe(tmp_path, include=("**/*.md", "*.txt")).scan()
    assert wider.files_scanned == 2


def test_oversized_files_are_skipped(tmp_path) -> None:
    _write(tmp_path, "huge.md", "TODO\n" + "x" * MAX_FILE_BYTES)

    report = IssueProbe(tmp_path).scan()

    assert report.files_skipped == 1
    assert report.files_scanned == 0
    assert report.score == 0


def test_missing_root_yields_empty_report(tmp_path) -> None:
    assert IssueProbe(tmp_path / "absent").issue_score() == 0


def test_scan_is_read_only(tmp_path) -> None:
    path = _write(tmp_path, "ch01.md", "TODO\n")
    before = path.stat().st_mtime_ns

    IssueProbe(tmp_path).scan()

    assert path.stat().st_mtime_ns == before
    assert path.read_text("utf-8") == "TODO\n"
