"""Runtime configuration for the supervisor loop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_COMMAND_TEMPLATE = "claude --dangerously-skip-permissions -p {prompt}"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class LoopSettings:
    """Global budgets and cadence of the control loop."""

    max_hours: float = 3.0
    max_iterations: int = 0
    curator_every: int = 3
    sleep_seconds: float = 5.0
    progress_file: str = "claude-progress.txt"
    run_initializer: bool = True
    lock_path: Path | None = None


@dataclass(slots=True)
class ReviewSettings:
    """Adaptive review interval bounds."""

    initial_interval: int = 6
    min_interval: int = 5
    max_interval: int = 50
    max_probe_interval: int = 25
    regression_threshold: int = 15


@dataclass(slots=True)
class BreakerSettings:
    """Circuit breaker threshold and backoff window."""

    max_consecutive_failures: int = 3
    backoff_floor_seconds: float = 5.0
    backoff_ceiling_seconds: float = 300.0


@dataclass(slots=True)
class WorkerSettings:
    """External worker command and timeouts."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    timeout_seconds: int = 1_800
    graceful_shutdown_seconds: int = 10
    transient_exit_codes: tuple[int, ...] = (137, 143)


@dataclass(slots=True)
class ProbeSettings:
    """Issue probe scan scope."""

    root: Path = Path(".")
    include: tuple[str, ...] = ("**/*.md",)


@dataclass(slots=True)
class LoggingSettings:
    log_dir: Path = Path("logs")
    level: str = "INFO"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    store_path: Path = Path("tasks.json")
    workdir: Path = Path(".")
    loop: LoopSettings = field(default_factory=LoopSettings)
    review: ReviewSettings = field(default_factory=ReviewSettings)
    breaker: BreakerSettings = field(default_factory=BreakerSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    probe: ProbeSettings = field(default_factory=ProbeSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_env(cls, store_path: Path | None = None) -> Settings:
        """Load settings from RALPH_LOOP_* variables with local defaults."""

        workdir = Path(os.getenv("RALPH_LOOP_WORKDIR", "."))
        lock_raw = os.getenv("RALPH_LOOP_LOCK_PATH", "").strip()
        return cls(
            store_path=store_path or Path(os.getenv("RALPH_LOOP_STORE_PATH", "tasks.json")),
            workdir=workdir,
            loop=LoopSettings(
                max_hours=float(os.getenv("RALPH_LOOP_MAX_HOURS", "3")),
                max_iterations=int(os.getenv("RALPH_LOOP_MAX_ITERATIONS", "0")),
                curator_every=int(os.getenv("RALPH_LOOP_CURATOR_EVERY", "3")),
                sleep_seconds=float(os.getenv("RALPH_LOOP_SLEEP_SECONDS", "5")),
                progress_file=os.getenv("RALPH_LOOP_PROGRESS_FILE", "claude-progress.txt"),
                run_initializer=_env_bool("RALPH_LOOP_RUN_INITIALIZER", default=True),
                lock_path=Path(lock_raw) if lock_raw else None,
            ),
            review=ReviewSettings(
                initial_interval=int(os.getenv("RALPH_LOOP_REVIEW_EVERY", "6")),
                min_interval=int(os.getenv("RALPH_LOOP_REVIEW_MIN_INTERVAL", "5")),
                max_interval=int(os.getenv("RALPH_LOOP_REVIEW_MAX_INTERVAL", "50")),
                max_probe_interval=int(os.getenv("RALPH_LOOP_REVIEW_MAX_PROBE_INTERVAL", "25")),
                regression_threshold=int(
                    os.getenv("RALPH_LOOP_REVIEW_REGRESSION_THRESHOLD", "15"),
                ),
            ),
            breaker=BreakerSettings(
                max_consecutive_failures=int(
                    os.getenv("RALPH_LOOP_MAX_CONSECUTIVE_FAILURES", "3"),
                ),
                backoff_floor_seconds=float(os.getenv("RALPH_LOOP_BACKOFF_FLOOR_SECONDS", "5")),
                backoff_ceiling_seconds=float(
                    os.getenv("RALPH_LOOP_BACKOFF_CEILING_SECONDS", "300"),
                ),
            ),
            worker=WorkerSettings(
                command_template=os.getenv(
                    "RALPH_LOOP_WORKER_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                timeout_seconds=int(os.getenv("RALPH_LOOP_WORKER_TIMEOUT_SECONDS", "1800")),
                graceful_shutdown_seconds=int(
                    os.getenv("RALPH_LOOP_WORKER_GRACEFUL_SHUTDOWN_SECONDS", "10"),
                ),
                transient_exit_codes=_env_int_tuple(
                    "RALPH_LOOP_WORKER_TRANSIENT_EXIT_CODES",
                    default=(137, 143),
                ),
            ),
            probe=ProbeSettings(
                root=Path(os.getenv("RALPH_LOOP_PROBE_ROOT", str(workdir))),
                include=_env_csv("RALPH_LOOP_PROBE_INCLUDE", default=("**/*.md",)),
            ),
            logging=LoggingSettings(
                log_dir=Path(os.getenv("RALPH_LOOP_LOG_DIR", "logs")),
                level=os.getenv("RALPH_LOOP_LOG_LEVEL", "INFO").strip().upper(),
            ),
        )

    @property
    def lock_path(self) -> Path:
        if self.loop.lock_path is not None:
            return self.loop.lock_path
        return self.store_path.parent / f".{self.store_path.name}.lock"

    def validate(self) -> None:  # noqa: C901
        """Raise configuration error for out-of-range values."""

        if self.loop.max_hours < 0:
            raise ValueError("RALPH_LOOP_MAX_HOURS must be >= 0.")
        if self.loop.max_iterations < 0:
            raise ValueError("RALPH_LOOP_MAX_ITERATIONS must be >= 0.")
        if self.loop.curator_every < 0:
            raise ValueError("RALPH_LOOP_CURATOR_EVERY must be >= 0.")
        if self.loop.sleep_seconds < 0:
            raise ValueError("RALPH_LOOP_SLEEP_SECONDS must be >= 0.")
        if self.review.min_interval < 1:
            raise ValueError("RALPH_LOOP_REVIEW_MIN_INTERVAL must be >= 1.")
        if self.review.max_interval < self.review.min_interval:
            raise ValueError(
                "RALPH_LOOP_REVIEW_MAX_INTERVAL must be >= RALPH_LOOP_REVIEW_MIN_INTERVAL.",
            )
        if self.review.initial_interval < 1:
            raise ValueError("RALPH_LOOP_REVIEW_EVERY must be >= 1.")
        if self.review.max_probe_interval < 1:
            raise ValueError("RALPH_LOOP_REVIEW_MAX_PROBE_INTERVAL must be >= 1.")
        if self.breaker.max_consecutive_failures < 1:
            raise ValueError("RALPH_LOOP_MAX_CONSECUTIVE_FAILURES must be >= 1.")
        if self.breaker.backoff_floor_seconds < 0:
            raise ValueError("RALPH_LOOP_BACKOFF_FLOOR_SECONDS must be >= 0.")
        if self.breaker.backoff_ceiling_seconds < self.breaker.backoff_floor_seconds:
            raise ValueError(
                "RALPH_LOOP_BACKOFF_CEILING_SECONDS must be >= RALPH_LOOP_BACKOFF_FLOOR_SECONDS.",
            )
        if self.worker.timeout_seconds <= 0:
            raise ValueError("RALPH_LOOP_WORKER_TIMEOUT_SECONDS must be > 0.")
        if self.worker.graceful_shutdown_seconds < 0:
            raise ValueError("RALPH_LOOP_WORKER_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if not self.worker.command_template.strip():
            raise ValueError("RALPH_LOOP_WORKER_COMMAND_TEMPLATE must not be empty.")
        if self.logging.level not in _LOG_LEVELS:
            raise ValueError(
                f"RALPH_LOOP_LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}.",
            )


def _env_bool(name: str, *, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_csv(name: str, *, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_int_tuple(name: str, *, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    values: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            values.append(int(token))
        except ValueError as error:
            raise ValueError(f"Invalid {name} entry: {token!r}") from error
    return tuple(values)
