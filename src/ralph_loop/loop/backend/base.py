"""Backend interface for worker invocation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class WorkerRequest:
    """Inputs required for one worker invocation."""

    instruction: str
    timeout_seconds: int
    command_template: str
    workdir: Path
    log_dir: Path
    label: str = "worker"
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class WorkerResult:
    """Execution outcome of one invocation."""

    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool
    duration_seconds: float
    stdout_path: Path | None = None
    stderr_path: Path | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class AgentBackend(Protocol):
    """Protocol implemented by worker runners."""

    def invoke(self, request: WorkerRequest) -> WorkerResult:
        """Run the worker and return execution metadata."""
