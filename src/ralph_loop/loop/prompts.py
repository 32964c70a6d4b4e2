"""Instruction templates for worker, curator, review and initializer passes."""

from __future__ import annotations

from datetime import date

from ralph_loop.loop.models import Task

REVIEW_AGENTS: tuple[tuple[str, str], ...] = (
    ("slop-checker", "Check for AI slop words"),
    ("diagram-reviewer", "Find diagram opportunities"),
    ("tech-accuracy", "Validate code and tools"),
    ("term-intro-checker", "Check term introductions"),
    ("oreilly-style", "Check O'Reilly conventions"),
    ("cross-ref-validator", "Verify cross-references"),
    ("progress-summarizer", "Summarize progress"),
)

WORKER_PROMPT = """\
Iteration {iteration}. Read CLAUDE.md, then complete ONE task from {store_name}.

Selected task: {task_id} ({task_type}, priority {priority})
Title: {title}
{description_block}
Work only on this task. Commit when done. Do not change the status of other tasks.
"""

CURATOR_PROMPT = """\
Iteration {iteration}. Use the task-curator agent to review {store_name} and {progress_file}.

- Re-prioritize pending tasks where recent progress changed their value.
- Merge duplicate tasks and split tasks that are too large for one session.
- Keep every blockedBy reference pointing at an existing task id.
- Record what you changed in curatorNotes.

Do not mark tasks complete. Commit when done.
"""

REVIEW_PROMPT = """\
Run all {agent_count} review agents IN PARALLEL using the Task tool. Send a single message with {agent_count} Task tool calls.

Agents to run (all in parallel):
{agent_lines}

The local issue scan currently reports score {issue_score}.
After all complete, write summary to reviews/review-{today}.md and commit.
"""

INITIALIZER_PROMPT = """\
# INITIALIZER AGENT

You are setting up a project for long-running agent work.

## Tasks

1. Read CLAUDE.md to understand the project
2. Create {progress_file} with this structure:

```
# Progress Log

## Current Status
- Phase: Setup
- Active: None
- Blockers: None

## Recent Activity
(entries will be added here)

## Compacted History
(older entries summarized here)
```

3. Verify {store_name} exists and has tasks
4. Git commit your setup work

Be thorough. Future agents depend on your setup.
"""


def build_worker_instruction(*, iteration: int, task: Task, store_name: str) -> str:
    description_block = f"\n{task.description.strip()}\n" if task.description.strip() else ""
    return WORKER_PROMPT.format(
        iteration=iteration,
        store_name=store_name,
        task_id=task.task_id,
        task_type=task.task_type,
        priority=task.priority or "normal",
        title=task.title,
        description_block=description_block,
    )


def build_curator_instruction(*, iteration: int, store_name: str, progress_file: str) -> str:
    return CURATOR_PROMPT.format(
        iteration=iteration,
        store_name=store_name,
        progress_file=progress_file,
    )


def build_review_instruction(*, today: date, issue_score: int) -> str:
    agent_lines = "\n".join(
        f"{index}. {name} - {summary}" for index, (name, summary) in enumerate(REVIEW_AGENTS, 1)
    )
    return REVIEW_PROMPT.format(
        agent_count=len(REVIEW_AGENTS),
        agent_lines=agent_lines,
        issue_score=issue_score,
        today=today.isoformat(),
    )


def build_initializer_instruction(*, store_name: str, progress_file: str) -> str:
    return INITIALIZER_PROMPT.format(store_name=store_name, progress_file=progress_file)
