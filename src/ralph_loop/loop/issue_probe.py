"""Cheap local defect scan used as a review-urgency signal."""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 1024 * 1024
SKIPPED_DIRECTORIES: frozenset[str] = frozenset({".git", "node_modules", ".venv", "__pycache__"})


class IssueSeverity(str, Enum):
    """Finding severities and their score weights."""

    CRITICAL = "critical"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def weight(self) -> int:
        return _SEVERITY_WEIGHTS[self]


_SEVERITY_WEIGHTS: dict[IssueSeverity, int] = {
    IssueSeverity.CRITICAL: 10,
    IssueSeverity.MEDIUM: 3,
    IssueSeverity.LOW: 1,
}


@dataclass(frozen=True, slots=True)
class IssueRule:
    """Line-level regex rule."""

    name: str
    severity: IssueSeverity
    pattern: re.Pattern[str]


@dataclass(slots=True)
class IssueFinding:
    rule: str
    severity: IssueSeverity
    path: Path
    line: int


@dataclass(slots=True)
class IssueReport:
    """Aggregated probe result."""

    findings: list[IssueFinding] = field(default_factory=list)
    files_scanned: int = 0
    files_skipped: int = 0

    def count(self, severity: IssueSeverity) -> int:
        return sum(1 for finding in self.findings if finding.severity == severity)

    @property
    def score(self) -> int:
        """critical*10 + medium*3 + low."""

        return sum(finding.severity.weight for finding in self.findings)

    def by_rule(self) -> Counter[str]:
        return Counter(finding.rule for finding in self.findings)


_SLOP_WORDS: tuple[str, ...] = (
    "delve",
    "tapestry",
    "seamlessly",
    "game-changer",
    "cutting-edge",
    "unleash",
    "leverage the power",
    "in today's fast-paced",
    "it's important to note",
    "it is worth noting",
    "navigate the complexities",
    "a testament to",
)

CODE_FENCE = re.compile(r"^\s*(```|~~~)")

DEFAULT_RULES: tuple[IssueRule, ...] = (
    IssueRule(
        name="merge_conflict_marker",
        severity=IssueSeverity.CRITICAL,
        pattern=re.compile(r"^(<{7} |>{7} |={7}$)"),
    ),
    IssueRule(
        name="todo_marker",
        severity=IssueSeverity.MEDIUM,
        pattern=re.compile(r"\b(TODO|FIXME|TBD|XXX)\b"),
    ),
    IssueRule(
        name="unresolved_reference",
        severity=IssueSeverity.MEDIUM,
        pattern=re.compile(r"\[(?:\?\?|ref|REF|link|LINK)\]|\(#\)|\{\{\s*ref\s*\}\}|\(\?\?\)"),
    ),
    IssueRule(
        name="slop_word",
        severity=IssueSeverity.LOW,
        pattern=re.compile(
            "|".join(re.escape(word) for word in _SLOP_WORDS),
            re.IGNORECASE,
        ),
    ),
)


class IssueProbe:
    """Read-only scan over the files under ``root`` matching ``include`` globs."""

    def __init__(
        self,
        root: Path,
        *,
        include: tuple[str, ...] = ("**/*.md",),
        rules: tuple[IssueRule, ...] = DEFAULT_RULES,
    ) -> None:
        self.root = root
        self.include = include
        self.rules = rules

    def scan(self) -> IssueReport:
        report = IssueReport()
        for path in self._iter_files():
            try:
                if path.stat().st_size > MAX_FILE_BYTES:
                    report.files_skipped += 1
                    continue
                text = path.read_text("utf-8", errors="replace")
            except OSError as error:
                logger.warning("Issue probe could not read %s: %s", path, error)
                report.files_skipped += 1
                continue
            report.files_scanned += 1
            report.findings.extend(self._scan_text(path, text))
        logger.debug(
            "Issue probe scanned %d files, score=%d",
            report.files_scanned,
            report.score,
        )
        return report

    def issue_score(self) -> int:
        return self.scan().score

    def _iter_files(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        seen: set[Path] = set()
        for pattern in self.include:
            for path in self.root.glob(pattern):
                if not path.is_file():
                    continue
                relative_parts = path.relative_to(self.root).parts[:-1]
                if any(part in SKIPPED_DIRECTORIES for part in relative_parts):
                    continue
                seen.add(path)
        return sorted(seen)

    def _scan_text(self, path: Path, text: str) -> list[IssueFinding]:
        findings: list[IssueFinding] = []
        fence_count = 0
        last_fence_line = 0
        for line_number, line in enumerate(text.splitlines(), start=1):
            if CODE_FENCE.match(line):
                fence_count += 1
                last_fence_line = line_number
                continue
            for rule in self.rules:
                if rule.pattern.search(line):
                    findings.append(
                        IssueFinding(
                            rule=rule.name,
                            severity=rule.severity,
                            path=path,
                            line=line_number,
                        ),
                    )
        if fence_count % 2 == 1:
            findings.append(
                IssueFinding(
                    rule="unbalanced_code_fence",
                    severity=IssueSeverity.CRITICAL,
                    path=path,
                    line=last_fence_line,
                ),
            )
        return findings
