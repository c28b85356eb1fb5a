"""Subprocess-based runner for external bead workers."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import time
from pathlib import Path

from bead_daemon.orchestrator.backend.base import WorkerRunRequest, WorkerRunResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
CANCELLED_EXIT_CODE = 130
_POLL_SECONDS = 0.1
_TERMINATE_WAIT_SECONDS = 2.0
_PLACEHOLDERS = ("bead_id", "bead_path", "workspace", "prd_path")


class WorkerLaunchError(RuntimeError):
    """Worker process could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliWorkerBackend:
    """Run the configured worker command template once per bead attempt."""

    def __init__(self, command_template: str) -> None:
        self.command_template = command_template

    def run(self, request: WorkerRunRequest) -> WorkerRunResult:
        run_args = build_run_args(
            command_template=self.command_template,
            bead_id=request.bead_id,
            bead_path=request.bead_path,
            workspace=request.workspace,
            prd_path=request.prd_path,
        )

        env = os.environ.copy()
        env["BEAD_DAEMON_BEAD_ID"] = request.bead_id
        env["BEAD_DAEMON_BEAD_PATH"] = str(request.bead_path)
        env["BEAD_DAEMON_WORKSPACE"] = str(request.workspace)

        try:
            request.log_path.parent.mkdir(parents=True, exist_ok=True)
            log_handle = request.log_path.open("w", encoding="utf-8")
        except OSError as error:
            raise WorkerLaunchError(
                f"Cannot open worker log {request.log_path}: {error}",
                transient=True,
            ) from error

        try:
            with log_handle:
                return _run_subprocess(
                    run_args=run_args,
                    env=env,
                    request=request,
                    log_handle=log_handle,
                )
        except FileNotFoundError as error:
            raise WorkerLaunchError(
                f"Worker command not found: {run_args[0]}",
                transient=False,
            ) from error
        except PermissionError as error:
            raise WorkerLaunchError(
                f"Worker command is not executable: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise WorkerLaunchError(f"Worker failed to start: {error}", transient=True) from error


def build_run_args(
    *,
    command_template: str,
    bead_id: str,
    bead_path: Path,
    workspace: Path,
    prd_path: Path | None,
) -> list[str]:
    """Render the command template into an argv list without invoking a shell."""

    stripped = command_template.strip()
    if not stripped:
        raise WorkerLaunchError("Worker command template is empty.", transient=False)

    values = {
        "bead_id": bead_id,
        "bead_path": str(bead_path),
        "workspace": str(workspace),
        "prd_path": str(prd_path) if prd_path is not None else "",
    }
    try:
        rendered = stripped.format(**{key: shlex.quote(values[key]) for key in _PLACEHOLDERS})
    except (KeyError, IndexError, ValueError) as error:
        raise WorkerLaunchError(
            f"Unsupported worker command placeholder: {error}",
            transient=False,
        ) from error

    try:
        argv = shlex.split(rendered)
    except ValueError as error:
        raise WorkerLaunchError(
            f"Worker command template is not valid shell syntax: {error}",
            transient=False,
        ) from error
    if not argv:
        raise WorkerLaunchError("Worker command template rendered empty command.", transient=False)
    return argv


def _run_subprocess(
    *,
    run_args: list[str],
    env: dict[str, str],
    request: WorkerRunRequest,
    log_handle,
) -> WorkerRunResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=request.workspace,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=log_handle,
        stderr=subprocess.STDOUT,
        text=True,
        start_new_session=hasattr(os, "killpg"),
    )
    logger.debug("Worker pid=%s started for bead %s", process.pid, request.bead_id)
    start_monotonic = time.monotonic()
    cancel_token = request.cancel_token
    shutdown_deadline: float | None = None
    graceful_seconds = max(0.0, request.graceful_shutdown_seconds)

    try:
        while True:
            returncode = process.poll()
            if returncode is not None:
                return WorkerRunResult(
                    exit_code=returncode,
                    timed_out=False,
                    cancelled=False,
                    duration_seconds=time.monotonic() - start_monotonic,
                    log_path=request.log_path,
                )

            now = time.monotonic()
            if now - start_monotonic >= request.timeout_seconds:
                logger.warning(
                    "Worker for bead %s exceeded %.0fs timeout; terminating pid=%s",
                    request.bead_id,
                    request.timeout_seconds,
                    process.pid,
                )
                terminate_process(process)
                return WorkerRunResult(
                    exit_code=TIMEOUT_EXIT_CODE,
                    timed_out=True,
                    cancelled=False,
                    duration_seconds=time.monotonic() - start_monotonic,
                    log_path=request.log_path,
                )

            if cancel_token is not None and cancel_token.cancelled:
                if shutdown_deadline is None:
                    shutdown_deadline = now + graceful_seconds
                if now >= shutdown_deadline:
                    logger.warning(
                        "Shutdown requested; terminating worker pid=%s for bead %s",
                        process.pid,
                        request.bead_id,
                    )
                    terminate_process(process)
                    return WorkerRunResult(
                        exit_code=CANCELLED_EXIT_CODE,
                        timed_out=False,
                        cancelled=True,
                        duration_seconds=time.monotonic() - start_monotonic,
                        log_path=request.log_path,
                    )
                time.sleep(_POLL_SECONDS)
            elif cancel_token is not None:
                cancel_token.wait(_POLL_SECONDS)
            else:
                time.sleep(_POLL_SECONDS)
    finally:
        if process.poll() is None:
            terminate_process(process)


def terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    """Stop the worker and its process group; already-exited workers are left alone."""

    if process.poll() is not None:
        return
    _signal_process(process, signal.SIGTERM)
    try:
        process.wait(timeout=_TERMINATE_WAIT_SECONDS)
    except subprocess.TimeoutExpired:
        _signal_process(process, getattr(signal, "SIGKILL", signal.SIGTERM))
        try:
            process.wait(timeout=_TERMINATE_WAIT_SECONDS)
        except subprocess.TimeoutExpired:
            logger.error("Worker pid=%s did not exit after kill", process.pid)


def _signal_process(
    process: subprocess.Popen[str] | subprocess.Popen[bytes],
    signum: signal.Signals,
) -> None:
    if process.poll() is not None:
        return
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signum)
        elif signum == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except (ProcessLookupError, PermissionError):
        return
    except OSError as error:
        logger.warning("Could not signal worker pid=%s: %s", process.pid, error)
