"""Bead worker backend implementations."""

from bead_daemon.orchestrator.backend.base import WorkerBackend, WorkerRunRequest, WorkerRunResult
from bead_daemon.orchestrator.backend.cli_backend import CliWorkerBackend, WorkerLaunchError

__all__ = [
    "CliWorkerBackend",
    "WorkerBackend",
    "WorkerLaunchError",
    "WorkerRunRequest",
    "WorkerRunResult",
]
