"""Worker backend implementations."""

from ralph_loop.loop.backend.base import AgentBackend, WorkerRequest, WorkerResult
from ralph_loop.loop.backend.cli_backend import BackendRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "BackendRunError",
    "CliAgentBackend",
    "WorkerRequest",
    "WorkerResult",
]
