"""Single-instance run lock with stale-owner detection."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from types import TracebackType

from ralph_loop.loop.common import to_iso, utc_now
from ralph_loop.loop.models import RalphLoopError

logger = logging.getLogger(__name__)


class LockHeldError(RalphLoopError):
    """Another live loop process owns the lock."""

    def __init__(self, path: Path, pid: int) -> None:
        super().__init__(f"Another loop is already running (pid={pid}, lock={path}).")
        self.path = path
        self.pid = pid


class RunLock:
    """Exclusive lock file holding the owner's pid."""

    def __init__(self, path: Path, *, store_path: Path | None = None) -> None:
        self.path = path
        self.store_path = store_path
        self.acquired = False

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            existing_pid = _read_lock_pid(self.path)
            if existing_pid and _pid_is_running(existing_pid):
                raise LockHeldError(self.path, existing_pid)
            logger.warning("Removing stale lock %s (pid=%s)", self.path, existing_pid or "unknown")
            self.path.unlink(missing_ok=True)

        payload = {
            "pid": os.getpid(),
            "created_at": to_iso(utc_now()),
            "store": str(self.store_path) if self.store_path is not None else None,
        }
        flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
        try:
            fd = os.open(str(self.path), flags)
        except FileExistsError as error:
            raise LockHeldError(self.path, _read_lock_pid(self.path)) from error
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, indent=2))
            handle.write("\n")
        self.acquired = True

    def release(self) -> None:
        if not self.acquired:
            return
        self.path.unlink(missing_ok=True)
        self.acquired = False

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.release()


def _read_lock_pid(path: Path) -> int:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, json.JSONDecodeError):
        return 0
    if not isinstance(payload, dict):
        return 0
    pid = payload.get("pid")
    if isinstance(pid, int) and not isinstance(pid, bool):
        return pid
    return 0


def _pid_is_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True
