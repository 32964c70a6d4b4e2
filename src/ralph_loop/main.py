"""CLI entrypoint for ralph-loop."""

from pathlib import Path

import rich_click as click

from ralph_loop import __version__
from ralph_loop.loop.controllers import (
    LoopCliController,
    LoopRunCommand,
    ProbeCommand,
    QueueCommand,
    StoreCommand,
    ValidateCommand,
)

click.rich_click.USE_MARKDOWN = True
LOOP_CONTROLLER = LoopCliController()

_STORE_OPTION_HELP = "Task store JSON path. Defaults to RALPH_LOOP_STORE_PATH or tasks.json."


@click.group()
@click.version_option(version=__version__, prog_name="ralph-loop")
def ralph_loop() -> None:
    """Supervise an unattended coding agent working through a JSON task store."""


@ralph_loop.command("run")
@click.option("--store", "store_path", type=click.Path(path_type=Path), default=None, help=_STORE_OPTION_HELP)
@click.option(
    "--max-hours",
    type=click.FloatRange(min=0),
    default=None,
    help="Wall-clock budget in hours (0 = unbounded). Default: RALPH_LOOP_MAX_HOURS or 3.",
)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=0),
    default=None,
    help="Cycle budget for this run (0 = unbounded).",
)
@click.option(
    "--review-every",
    type=click.IntRange(min=1),
    default=None,
    help="Seed for the adaptive review interval, in cycles.",
)
@click.option(
    "--curator-every",
    type=click.IntRange(min=0),
    default=None,
    help="Run the curator pass every N cycles (0 = never).",
)
@click.option(
    "--sleep",
    "sleep_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Delay between cycles, in seconds.",
)
@click.option(
    "--worker-timeout",
    type=click.IntRange(min=1),
    default=None,
    help="Hard timeout for one worker invocation, in seconds.",
)
@click.option(
    "--resume",
    is_flag=True,
    default=False,
    help="Continue from the persisted iteration counter and review interval.",
)
@click.option(
    "--reset-circuit-breaker",
    is_flag=True,
    default=False,
    help="Clear a tripped circuit breaker before starting.",
)
def run_loop(  # noqa: PLR0913
    store_path: Path | None,
    max_hours: float | None,
    max_iterations: int | None,
    review_every: int | None,
    curator_every: int | None,
    sleep_seconds: float | None,
    worker_timeout: int | None,
    resume: bool,
    reset_circuit_breaker: bool,
) -> None:
    """Run the supervisor loop.

    Exit code is `0` when the queue drained, a budget ran out or the run was
    interrupted, and `1` when the circuit breaker tripped or the store could
    not be validated or restored.
    """

    result = LOOP_CONTROLLER.run_loop(
        LoopRunCommand(
            store_path=store_path,
            max_hours=max_hours,
            max_iterations=max_iterations,
            review_every=review_every,
            curator_every=curator_every,
            sleep_seconds=sleep_seconds,
            worker_timeout=worker_timeout,
            resume=resume,
            reset_circuit_breaker=reset_circuit_breaker,
        ),
    )
    _emit_lines(result.lines)
    if result.exit_code != 0:
        click.get_current_context().exit(result.exit_code)


@ralph_loop.command("validate")
@click.option("--store", "store_path", type=click.Path(path_type=Path), default=None, help=_STORE_OPTION_HELP)
@click.option("--fix", is_flag=True, default=False, help="Recompute the stats block only.")
def validate(store_path: Path | None, fix: bool) -> None:
    """Validate task structure, dependency graph and stats consistency."""

    result = LOOP_CONTROLLER.validate(ValidateCommand(store_path=store_path, fix=fix))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Task store validation failed.")


@ralph_loop.command("queue")
@click.option("--store", "store_path", type=click.Path(path_type=Path), default=None, help=_STORE_OPTION_HELP)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=20,
    show_default=True,
    help="How many ranked tasks to print.",
)
def queue(store_path: Path | None, limit: int) -> None:
    """Unblock dependents, rescore and print the ranked queue."""

    _emit_lines(LOOP_CONTROLLER.queue(QueueCommand(store_path=store_path, limit=limit)))


@ralph_loop.command("status")
@click.option("--store", "store_path", type=click.Path(path_type=Path), default=None, help=_STORE_OPTION_HELP)
def status(store_path: Path | None) -> None:
    """Show progress, checkpoint and review controller state."""

    _emit_lines(LOOP_CONTROLLER.status(StoreCommand(store_path=store_path)))


@ralph_loop.command("reset-breaker")
@click.option("--store", "store_path", type=click.Path(path_type=Path), default=None, help=_STORE_OPTION_HELP)
def reset_breaker(store_path: Path | None) -> None:
    """Clear a tripped circuit breaker."""

    _emit_lines(LOOP_CONTROLLER.reset_breaker(StoreCommand(store_path=store_path)))


@ralph_loop.command("probe")
@click.option(
    "--root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory to scan. Default: RALPH_LOOP_PROBE_ROOT or the working directory.",
)
def probe(root: Path | None) -> None:
    """Run the local issue probe and print the weighted issue score."""

    _emit_lines(LOOP_CONTROLLER.probe(ProbeCommand(root=root)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ralph_loop()
