"""Subprocess-based worker backend for CLI agents."""

from __future__ import annotations

import itertools
import logging
import os
import re
import shlex
import subprocess
import time
from pathlib import Path

from ralph_loop.loop.backend.base import WorkerRequest, WorkerResult
from ralph_loop.loop.models import RalphLoopError

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
OUTPUT_TAIL_BYTES = 64 * 1024
_LABEL_SAFE = re.compile(r"[^A-Za-z0-9_.-]+")


class BackendRunError(RalphLoopError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Execute the configured command template once per invocation."""

    def __init__(self) -> None:
        self._sequence = itertools.count(1)

    def invoke(self, request: WorkerRequest) -> WorkerResult:
        run_dir = request.log_dir / "workers"
        run_dir.mkdir(parents=True, exist_ok=True)
        stem = f"{time.strftime('%Y%m%dT%H%M%S')}-{next(self._sequence):04d}-{_safe_label(request.label)}"
        stdout_path = run_dir / f"{stem}.stdout.log"
        stderr_path = run_dir / f"{stem}.stderr.log"
        prompt_file = run_dir / f"{stem}.prompt.txt"
        prompt_file.write_text(request.instruction, "utf-8")

        run_args, command_head = _build_run_args(
            command_template=request.command_template,
            prompt=request.instruction,
            prompt_file=prompt_file,
            workdir=request.workdir,
        )

        env = os.environ.copy()
        env["RALPH_LOOP_WORKER_LABEL"] = request.label
        env["RALPH_LOOP_PROMPT_FILE"] = str(prompt_file)

        logger.info("Invoking %s: %s (timeout %ss)", request.label, command_head, request.timeout_seconds)
        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out, duration = _run_subprocess_with_shutdown(
                    run_args=run_args,
                    env=env,
                    cwd=request.workdir,
                    timeout_seconds=request.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    shutdown_requested=request.shutdown_requested,
                    graceful_shutdown_seconds=request.graceful_shutdown_seconds,
                )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"CLI backend command not found: {command_head}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"CLI backend failed to start: {error}",
                transient=True,
            ) from error

        return WorkerResult(
            exit_code=exit_code,
            stdout=_read_tail(stdout_path),
            stderr=_read_tail(stderr_path),
            timed_out=timed_out,
            duration_seconds=duration,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )


def _build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    workdir: Path,
) -> tuple[list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("CLI backend command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "CLI backend command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            workdir=shlex.quote(str(workdir)),
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "CLI backend command template rendered empty command.",
            transient=False,
        )
    return argv, argv[0]


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path,
    timeout_seconds: int,
    stdout_handle,
    stderr_handle,
    shutdown_requested,
    graceful_shutdown_seconds: int | None,
) -> tuple[int, bool, float]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, graceful_shutdown_seconds or 0)

    while True:
        returncode = process.poll()
        now = time.monotonic()
        if returncode is not None:
            return returncode, False, now - start_monotonic

        if now - start_monotonic >= timeout_seconds:
            logger.warning("Worker exceeded %ss timeout, terminating pid %s", timeout_seconds, process.pid)
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True, time.monotonic() - start_monotonic

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return TIMEOUT_EXIT_CODE, True, time.monotonic() - start_monotonic

        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _read_tail(path: Path) -> str:
    try:
        with path.open("rb") as handle:
            handle.seek(0, os.SEEK_END)
            size = handle.tell()
            handle.seek(max(0, size - OUTPUT_TAIL_BYTES))
            return handle.read().decode("utf-8", errors="replace")
    except OSError:
        return ""


def _safe_label(label: str) -> str:
    return _LABEL_SAFE.sub("-", label).strip("-") or "worker"
