"""Single-bead execution: dispatch, wait, and the completion decision."""

from __future__ import annotations

import logging
from pathlib import Path

from bead_daemon.orchestrator.backend import (
    WorkerBackend,
    WorkerLaunchError,
    WorkerRunRequest,
    WorkerRunResult,
)
from bead_daemon.orchestrator.cancellation import CancellationToken
from bead_daemon.orchestrator.completion import CompletionSource
from bead_daemon.orchestrator.models import (
    Bead,
    BeadStatus,
    ExecutionOutcome,
    ExecutionResult,
    utc_now,
)
from bead_daemon.orchestrator.store import (
    BeadFormatError,
    BeadNotFoundError,
    BeadStore,
    BeadStoreError,
)

logger = logging.getLogger(__name__)


class BeadExecutor:
    """Runs one bead attempt in a worker process and records the outcome."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: BeadStore,
        backend: WorkerBackend,
        completion_source: CompletionSource,
        workspace: Path,
        log_dir: Path,
        max_attempts: int = 3,
        timeout_seconds: float = 7_200.0,
        prd_path: Path | None = None,
        cancel_token: CancellationToken | None = None,
        graceful_shutdown_seconds: float = 30.0,
    ) -> None:
        self.store = store
        self.backend = backend
        self.completion_source = completion_source
        self.workspace = workspace
        self.log_dir = log_dir
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds
        self.prd_path = prd_path
        self.cancel_token = cancel_token
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    def execute(self, bead: Bead) -> ExecutionResult:
        """Execute ``bead`` once; store failures are reported, never raised."""

        try:
            self.store.path_for(bead.id)
        except ValueError as error:
            logger.error("Rejecting bead %r: %s", bead.id, error)
            return ExecutionResult(
                bead_id=bead.id or "",
                outcome=ExecutionOutcome.REJECTED,
                status=None,
                detail=str(error),
            )
        if not isinstance(bead.status, BeadStatus):
            bead.status = BeadStatus.PENDING

        try:
            return self._execute(bead)
        except BeadStoreError as error:
            logger.error("Could not persist state for bead %s: %s", bead.id, error)
            return ExecutionResult(
                bead_id=bead.id,
                outcome=ExecutionOutcome.ERROR,
                status=bead.status,
                detail=str(error),
            )

    def _execute(self, bead: Bead) -> ExecutionResult:
        if bead.meta.attempt_count >= self.max_attempts:
            bead.status = BeadStatus.BLOCKED
            bead.meta.last_error = (
                f"Blocked after {bead.meta.attempt_count} attempts "
                f"(max_attempts={self.max_attempts}); needs manual intervention."
            )
            self.store.save(bead)
            logger.warning("Bead %s blocked: %s", bead.id, bead.meta.last_error)
            return ExecutionResult(
                bead_id=bead.id,
                outcome=ExecutionOutcome.BLOCKED,
                status=bead.status,
                detail=bead.meta.last_error,
            )

        started_at = utc_now()
        bead.status = BeadStatus.IN_PROGRESS
        bead.meta.last_attempt = started_at
        bead.meta.attempt_count += 1
        self.store.save(bead)
        logger.info(
            "Processing bead %s (attempt %d/%d)",
            bead.id,
            bead.meta.attempt_count,
            self.max_attempts,
        )

        try:
            execution = self.backend.run(
                WorkerRunRequest(
                    bead_id=bead.id,
                    bead_path=self.store.path_for(bead.id),
                    workspace=self.workspace,
                    timeout_seconds=self.timeout_seconds,
                    log_path=self.log_dir / f"bead-{bead.id}-{started_at:%Y%m%d-%H%M%S}.log",
                    prd_path=self.prd_path,
                    cancel_token=self.cancel_token,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                ),
            )
        except WorkerLaunchError as error:
            logger.error("Worker for bead %s failed to launch: %s", bead.id, error)
            return self._finish_unsuccessful(
                bead=self._reload(bead),
                exit_code=None,
                reason=f"Worker failed to launch: {error}",
            )
        except (OSError, ValueError) as error:
            logger.exception("Worker backend failed for bead %s", bead.id)
            return self._finish_unsuccessful(
                bead=self._reload(bead),
                exit_code=None,
                reason=f"Worker backend error: {error}",
            )

        if execution.timed_out:
            return self._handle_timeout(bead, execution)

        current = self._reload(bead)
        if current.status == BeadStatus.COMPLETED:
            logger.info("Bead %s completed (marked by worker)", bead.id)
            return ExecutionResult(
                bead_id=bead.id,
                outcome=ExecutionOutcome.COMPLETED,
                status=current.status,
                exit_code=execution.exit_code,
                detail="Bead record marked completed by worker.",
            )

        if execution.exit_code == 0 and self.completion_source.lookup(bead.id).done:
            current.status = BeadStatus.COMPLETED
            current.meta.last_error = None
            self.store.save(current)
            logger.info("Bead %s completed (confirmed by completion source)", bead.id)
            return ExecutionResult(
                bead_id=bead.id,
                outcome=ExecutionOutcome.COMPLETED,
                status=current.status,
                exit_code=execution.exit_code,
                detail="Worker succeeded and completion source confirmed.",
            )

        if execution.cancelled:
            current.status = BeadStatus.RETRY
            current.meta.last_error = "Worker interrupted by daemon shutdown."
            self.store.save(current)
            logger.warning("Bead %s interrupted by shutdown; left for retry", bead.id)
            return ExecutionResult(
                bead_id=bead.id,
                outcome=ExecutionOutcome.RETRY,
                status=current.status,
                exit_code=execution.exit_code,
                detail=current.meta.last_error,
            )

        if execution.exit_code == 0:
            reason = "Worker exited 0 but completion was not confirmed."
        else:
            reason = f"Worker exited with code {execution.exit_code}."
        return self._finish_unsuccessful(
            bead=current,
            exit_code=execution.exit_code,
            reason=reason,
        )

    def _handle_timeout(self, bead: Bead, execution: WorkerRunResult) -> ExecutionResult:
        current = self._reload(bead)
        current.status = BeadStatus.RETRY
        current.meta.timeout_count += 1
        current.meta.last_error = (
            f"Worker timed out after {self.timeout_seconds:.0f}s "
            f"(log: {execution.log_path.name})."
        )
        self.store.save(current)
        logger.warning("Bead %s timed out; scheduled for retry", bead.id)
        return ExecutionResult(
            bead_id=bead.id,
            outcome=ExecutionOutcome.TIMED_OUT,
            status=current.status,
            exit_code=execution.exit_code,
            detail=current.meta.last_error,
        )

    def _finish_unsuccessful(
        self,
        *,
        bead: Bead,
        exit_code: int | None,
        reason: str,
    ) -> ExecutionResult:
        if bead.meta.attempt_count >= self.max_attempts:
            bead.status = BeadStatus.FAILED
            bead.meta.last_error = f"{reason} Giving up after {bead.meta.attempt_count} attempts."
            outcome = ExecutionOutcome.FAILED
        else:
            bead.status = BeadStatus.RETRY
            bead.meta.last_error = reason
            outcome = ExecutionOutcome.RETRY
        self.store.save(bead)
        logger.warning(
            "Bead %s did not complete (status: %s): %s",
            bead.id,
            bead.status.value,
            reason,
        )
        return ExecutionResult(
            bead_id=bead.id,
            outcome=outcome,
            status=bead.status,
            exit_code=exit_code,
            detail=bead.meta.last_error,
        )

    def _reload(self, dispatched: Bead) -> Bead:
        """Re-read the record the worker may have edited, keeping daemon counters."""

        try:
            current = self.store.load(dispatched.id)
        except (BeadNotFoundError, BeadFormatError, OSError) as error:
            logger.warning(
                "Could not re-read bead %s after worker exit (%s); using dispatched copy",
                dispatched.id,
                error,
            )
            return dispatched

        meta = current.meta
        meta.attempt_count = max(meta.attempt_count, dispatched.meta.attempt_count)
        meta.timeout_count = max(meta.timeout_count, dispatched.meta.timeout_count)
        meta.stuck_count = max(meta.stuck_count, dispatched.meta.stuck_count)
        if meta.last_attempt is None:
            meta.last_attempt = dispatched.meta.last_attempt
        if current.created_at is None:
            current.created_at = dispatched.created_at
        return current
