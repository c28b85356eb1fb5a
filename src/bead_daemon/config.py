"""Runtime configuration for the bead daemon."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from bead_daemon.orchestrator.backend.cli_backend import WorkerLaunchError, build_run_args

STATE_DIR_NAME = ".bead-daemon"


@dataclass(frozen=True, slots=True)
class DaemonSettings:
    """Scheduling, retry and self-restart settings."""

    poll_interval_seconds: float = 30.0
    bead_timeout_seconds: float = 7_200.0
    max_attempts: int = 3
    stuck_threshold_seconds: float = 7_200.0
    inter_item_pause_seconds: float = 2.0
    consecutive_error_threshold: int = 3
    restart_base_delay_seconds: float = 30.0
    restart_max_delay_seconds: float = 600.0
    graceful_shutdown_seconds: float = 30.0


@dataclass(frozen=True, slots=True)
class WorkerSettings:
    """External worker process settings."""

    command_template: str = ""
    use_prd: bool = True


@dataclass(frozen=True, slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    workspace: Path = Path(".")
    state_dir: Path | None = None
    prd_path: Path | None = None
    log_level: str = "INFO"
    daemon: DaemonSettings = field(default_factory=DaemonSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @property
    def resolved_state_dir(self) -> Path:
        return self.state_dir if self.state_dir is not None else self.workspace / STATE_DIR_NAME

    @property
    def beads_dir(self) -> Path:
        return self.resolved_state_dir / "beads"

    @property
    def log_dir(self) -> Path:
        return self.resolved_state_dir / "logs"

    @property
    def pid_file(self) -> Path:
        return self.resolved_state_dir / "daemon.pid"

    @property
    def resolved_prd_path(self) -> Path:
        return self.prd_path if self.prd_path is not None else self.workspace / "prd.json"

    @classmethod
    def from_env(cls, workspace: Path | None = None) -> Settings:
        """Load settings from ``BEAD_DAEMON_*`` environment variables."""

        resolved_workspace = workspace or Path(os.getenv("BEAD_DAEMON_WORKSPACE", "."))
        state_dir_raw = os.getenv("BEAD_DAEMON_STATE_DIR", "").strip()
        prd_path_raw = os.getenv("BEAD_DAEMON_PRD_PATH", "").strip()
        return cls(
            workspace=resolved_workspace,
            state_dir=Path(state_dir_raw) if state_dir_raw else None,
            prd_path=Path(prd_path_raw) if prd_path_raw else None,
            log_level=os.getenv("BEAD_DAEMON_LOG_LEVEL", "INFO").strip().upper(),
            daemon=DaemonSettings(
                poll_interval_seconds=_env_float("BEAD_DAEMON_POLL_INTERVAL_SECONDS", 30.0),
                bead_timeout_seconds=_env_float("BEAD_DAEMON_BEAD_TIMEOUT_SECONDS", 7_200.0),
                max_attempts=_env_int("BEAD_DAEMON_MAX_ATTEMPTS", 3),
                stuck_threshold_seconds=_env_float(
                    "BEAD_DAEMON_STUCK_THRESHOLD_SECONDS",
                    7_200.0,
                ),
                inter_item_pause_seconds=_env_float("BEAD_DAEMON_INTER_ITEM_PAUSE_SECONDS", 2.0),
                consecutive_error_threshold=_env_int(
                    "BEAD_DAEMON_CONSECUTIVE_ERROR_THRESHOLD",
                    3,
                ),
                restart_base_delay_seconds=_env_float(
                    "BEAD_DAEMON_RESTART_BASE_DELAY_SECONDS",
                    30.0,
                ),
                restart_max_delay_seconds=_env_float(
                    "BEAD_DAEMON_RESTART_MAX_DELAY_SECONDS",
                    600.0,
                ),
                graceful_shutdown_seconds=_env_float(
                    "BEAD_DAEMON_GRACEFUL_SHUTDOWN_SECONDS",
                    30.0,
                ),
            ),
            worker=WorkerSettings(
                command_template=os.getenv("BEAD_DAEMON_WORKER_COMMAND", "").strip(),
                use_prd=_env_bool("BEAD_DAEMON_USE_PRD", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if scheduling values are out of range."""

        daemon = self.daemon
        if daemon.poll_interval_seconds < 0:
            raise ValueError("BEAD_DAEMON_POLL_INTERVAL_SECONDS must be >= 0.")
        if daemon.bead_timeout_seconds <= 0:
            raise ValueError("BEAD_DAEMON_BEAD_TIMEOUT_SECONDS must be > 0.")
        if daemon.max_attempts <= 0:
            raise ValueError("BEAD_DAEMON_MAX_ATTEMPTS must be > 0.")
        if daemon.stuck_threshold_seconds <= 0:
            raise ValueError("BEAD_DAEMON_STUCK_THRESHOLD_SECONDS must be > 0.")
        if daemon.inter_item_pause_seconds < 0:
            raise ValueError("BEAD_DAEMON_INTER_ITEM_PAUSE_SECONDS must be >= 0.")
        if daemon.consecutive_error_threshold <= 0:
            raise ValueError("BEAD_DAEMON_CONSECUTIVE_ERROR_THRESHOLD must be > 0.")
        if daemon.restart_base_delay_seconds <= 0:
            raise ValueError("BEAD_DAEMON_RESTART_BASE_DELAY_SECONDS must be > 0.")
        if daemon.restart_max_delay_seconds < daemon.restart_base_delay_seconds:
            raise ValueError(
                "BEAD_DAEMON_RESTART_MAX_DELAY_SECONDS must be >= "
                "BEAD_DAEMON_RESTART_BASE_DELAY_SECONDS.",
            )
        if daemon.graceful_shutdown_seconds < 0:
            raise ValueError("BEAD_DAEMON_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if logging.getLevelName(self.log_level) == f"Level {self.log_level}":
            raise ValueError(f"Invalid BEAD_DAEMON_LOG_LEVEL: {self.log_level!r}")

    def validate_for_daemon(self) -> None:
        """Raise configuration error if the daemon cannot dispatch workers."""

        self.validate()
        if not self.worker.command_template:
            raise ValueError(
                "A worker command is required. Set BEAD_DAEMON_WORKER_COMMAND, "
                "for example 'my-agent --bead {bead_path}'.",
            )
        try:
            build_run_args(
                command_template=self.worker.command_template,
                bead_id="example",
                bead_path=self.beads_dir / "example.json",
                workspace=self.workspace,
                prd_path=self.resolved_prd_path,
            )
        except WorkerLaunchError as error:
            raise ValueError(f"Invalid BEAD_DAEMON_WORKER_COMMAND: {error}") from error
        if not self.workspace.is_dir():
            raise ValueError(f"Workspace directory does not exist: {self.workspace}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
