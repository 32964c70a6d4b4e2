from __future__ import annotations

import shlex
import sys
from pathlib import Path

import allure
import pytest

from ralph_loop.loop.backend.base import WorkerRequest
from ralph_loop.loop.backend.cli_backend import (
    TIMEOUT_EXIT_CODE,
    BackendRunError,
    CliAgentBackend,
    _build_run_args,
)

pytestmark = [
    allure.epic("Worker Runtime"),
    allure.feature("Agent Command Rendering"),
]


def test_build_run_args_quotes_placeholder_values() -> None:
    run_args, command_head = _build_run_args(
        command_template="claude -p {prompt} --cwd {workdir}",
        prompt="write chapter 'one'",
        prompt_file=Path("logs/prompt.txt"),
        workdir=Path("my book"),
    )

    assert command_head == "claude"
    assert run_args == ["claude", "-p", "write chapter 'one'", "--cwd", "my book"]


def test_build_run_args_accepts_prompt_file_only() -> None:
    run_args, _ = _build_run_args(
        command_template="agent --input {prompt_file}",
        prompt="ignored",
        prompt_file=Path("logs/p 1.txt"),
        workdir=Path("."),
    )

    assert run_args == ["agent", "--input", "logs/p 1.txt"]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("agent --run", "must include"),
        ("agent {prompt} {model}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(BackendRunError, match=message) as error:
        _build_run_args(
            command_template=template,
            prompt="x",
            prompt_file=Path("p.txt"),
            workdir=Path("."),
        )

    assert error.value.transient is False


def _request(tmp_path: Path, command_template: str, **fields) -> WorkerRequest:
    workdir = tmp_path / "work"
    workdir.mkdir(exist_ok=True)
    return WorkerRequest(
        instruction=fields.pop("instruction", "Write chapter one."),
        timeout_seconds=fields.pop("timeout_seconds", 30),
        command_template=command_template,
        workdir=workdir,
        log_dir=tmp_path / "logs",
        **fields,
    )


def test_echo_agent_run_captures_output_and_prompt(tmp_path, echo_command) -> None:
    request = _request(tmp_path, echo_command, label="worker ch01")

    result = CliAgentBackend().invoke(request)

    assert result.succeeded
    assert "appended" in result.stdout
    assert (request.workdir / "agent-output.md").read_text("utf-8") == "Write chapter one.\n"
    prompt_files = list((tmp_path / "logs" / "workers").glob("*.prompt.txt"))
    assert len(prompt_files) == 1
    assert prompt_files[0].name.endswith("-worker-ch01.prompt.txt")
    assert result.stdout_path is not None and result.stdout_path.exists()


def test_nonzero_exit_keeps_stderr_tail(tmp_path, echo_command) -> None:
    request = _request(tmp_path, f"{echo_command} --exit-code 3 --stderr 'rate limit hit'")

    result = CliAgentBackend().invoke(request)

    assert result.exit_code == 3
    assert not result.timed_out
    assert "rate limit hit" in result.stderr


def test_timeout_terminates_worker(tmp_path, echo_command) -> None:
    request = _request(tmp_path, f"{echo_command} --sleep 30", timeout_seconds=1)

    result = CliAgentBackend().invoke(request)

    assert result.timed_out
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.duration_seconds < 10


def test_shutdown_request_stops_worker_after_grace(tmp_path, echo_command) -> None:
    request = _request(
        tmp_path,
        f"{echo_command} --sleep 30",
        shutdown_requested=lambda: True,
        graceful_shutdown_seconds=0,
    )

    result = CliAgentBackend().invoke(request)

    assert result.timed_out
    assert result.duration_seconds < 10


def test_missing_command_is_not_transient(tmp_path) -> None:
    request = _request(tmp_path, "definitely-not-a-real-agent-binary {prompt_file}")

    with pytest.raises(BackendRunError, match="command not found") as error:
        CliAgentBackend().invoke(request)

    assert error.value.transient is False


def test_worker_sees_label_environment(tmp_path) -> None:
    script = "import os; print(os.environ['RALPH_LOOP_WORKER_LABEL'])"
    template = f"{shlex.quote(sys.executable)} -c {shlex.quote(script)} {{prompt_file}}"
    request = _request(tmp_path, template, label="curator")

    result = CliAgentBackend().invoke(request)

    assert result.stdout.strip() == "curator"
