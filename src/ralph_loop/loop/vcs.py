"""Git-backed progress oracle.

The loop never interprets commit contents. It only needs to know whether
HEAD moved during a worker invocation and how to restore a file from the
last commit that passed the progress check.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from ralph_loop.loop.models import RalphLoopError

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 60


class OracleError(RalphLoopError):
    """Progress oracle command failed or the repository is unusable."""


class ProgressOracle(Protocol):
    """Opaque pointer source used to detect progress and roll back."""

    def current_pointer(self) -> str:
        """Return the current state pointer; empty when none exists yet."""

    def rollback(self, pointer: str, paths: Sequence[Path]) -> None:
        """Restore ``paths`` to their content at ``pointer``."""

    def pointers_differ(self, before: str, after: str) -> bool:
        """Whether two pointers identify different states."""


class GitProgressOracle:
    """ProgressOracle over ``git rev-parse HEAD`` and ``git checkout``."""

    def __init__(self, repo_root: Path, *, timeout_seconds: int = GIT_TIMEOUT_SECONDS) -> None:
        self.repo_root = repo_root
        self.timeout_seconds = timeout_seconds

    def current_pointer(self) -> str:
        result = self._run(["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        if result.returncode == 0:
            return result.stdout.strip()
        if result.returncode == 1:
            # Unborn HEAD: repository exists but has no commits yet.
            return ""
        raise OracleError(_describe_failure(["rev-parse", "HEAD"], result))

    def rollback(self, pointer: str, paths: Sequence[Path]) -> None:
        if not pointer:
            raise OracleError("Cannot roll back without a commit pointer.")
        relative = [str(self._relative(path)) for path in paths]
        self._run(["checkout", pointer, "--", *relative])
        logger.warning("Restored %s from commit %s", ", ".join(relative), pointer[:12])

    def pointers_differ(self, before: str, after: str) -> bool:
        return before != after

    def _relative(self, path: Path) -> Path:
        resolved_root = self.repo_root.resolve()
        resolved = path.resolve()
        try:
            return resolved.relative_to(resolved_root)
        except ValueError:
            return path

    def _run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        try:
            result = subprocess.run(  # noqa: S603
                command,
                cwd=self.repo_root,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise OracleError("git executable not found on PATH.") from error
        except subprocess.TimeoutExpired as error:
            raise OracleError(
                f"git {' '.join(args)} timed out after {self.timeout_seconds}s",
            ) from error
        except OSError as error:
            raise OracleError(f"git {' '.join(args)} failed to start: {error}") from error
        if check and result.returncode != 0:
            raise OracleError(_describe_failure(args, result))
        return result


def _describe_failure(args: Sequence[str], result: subprocess.CompletedProcess[str]) -> str:
    message = (result.stderr or "").strip() or (result.stdout or "").strip() or "unknown git error"
    return f"git {' '.join(args)} failed: {message}"
