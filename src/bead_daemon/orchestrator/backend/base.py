"""Backend interface for bead worker execution."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from bead_daemon.orchestrator.cancellation import CancellationToken


@dataclass(slots=True)
class WorkerRunRequest:
    """Inputs required to execute one bead attempt."""

    bead_id: str
    bead_path: Path
    workspace: Path
    timeout_seconds: float
    log_path: Path
    prd_path: Path | None = None
    cancel_token: CancellationToken | None = None
    graceful_shutdown_seconds: float = 0.0


@dataclass(slots=True)
class WorkerRunResult:
    """Execution outcome from the worker process."""

    exit_code: int
    timed_out: bool
    cancelled: bool
    duration_seconds: float
    log_path: Path


class WorkerBackend(Protocol):
    """Protocol implemented by worker runners."""

    def run(self, request: WorkerRunRequest) -> WorkerRunResult:
        """Run one bead attempt and return execution metadata."""
