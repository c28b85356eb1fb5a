"""Top-level daemon loop: reconcile, select, dispatch, back off on failure storms."""

from __future__ import annotations

import logging
import os
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta

from bead_daemon.config import Settings
from bead_daemon.orchestrator.backend import CliWorkerBackend, WorkerBackend
from bead_daemon.orchestrator.cancellation import CancellationToken
from bead_daemon.orchestrator.completion import (
    CompletionSource,
    NullCompletionSource,
    PrdCompletionSource,
)
from bead_daemon.orchestrator.executor import BeadExecutor
from bead_daemon.orchestrator.models import CycleSummary, DaemonRunSummary
from bead_daemon.orchestrator.pidfile import PidFile
from bead_daemon.orchestrator.reconciler import Reconciler
from bead_daemon.orchestrator.store import (
    BeadFormatError,
    BeadNotFoundError,
    BeadStore,
    FileBeadStore,
)

logger = logging.getLogger(__name__)


class RestartBackoff:
    """Self-restart delay: base, doubled per breach, capped at maximum."""

    def __init__(self, *, base_seconds: float, max_seconds: float) -> None:
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self._next_seconds = base_seconds

    def next_delay(self) -> float:
        delay = min(self._next_seconds, self.max_seconds)
        self._next_seconds = min(self._next_seconds * 2, self.max_seconds)
        return delay

    def reset(self) -> None:
        self._next_seconds = self.base_seconds


class BeadDaemon:
    """Polls the bead store and dispatches eligible beads one at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: BeadStore,
        reconciler: Reconciler,
        executor: BeadExecutor,
        cancel_token: CancellationToken,
        pid_file: PidFile | None = None,
        poll_interval_seconds: float = 30.0,
        inter_item_pause_seconds: float = 2.0,
        stuck_threshold_seconds: float = 7_200.0,
        consecutive_error_threshold: int = 3,
        restart_base_delay_seconds: float = 30.0,
        restart_max_delay_seconds: float = 600.0,
        extra_dirs: tuple[os.PathLike[str], ...] = (),
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.executor = executor
        self.cancel_token = cancel_token
        self.pid_file = pid_file
        self.poll_interval_seconds = poll_interval_seconds
        self.inter_item_pause_seconds = inter_item_pause_seconds
        self.stuck_threshold = timedelta(seconds=stuck_threshold_seconds)
        self.consecutive_error_threshold = consecutive_error_threshold
        self.backoff = RestartBackoff(
            base_seconds=restart_base_delay_seconds,
            max_seconds=restart_max_delay_seconds,
        )
        self.extra_dirs = extra_dirs
        self.consecutive_errors = 0

    def run_cycle(self) -> CycleSummary:
        """Reconcile stuck beads, then dispatch every eligible bead in priority order."""

        summary = CycleSummary()
        if self.cancel_token.cancelled:
            return summary

        summary.reset_stuck = len(self.reconciler.reset_stale(self.stuck_threshold))
        beads = self.store.list_eligible()
        summary.eligible = len(beads)
        if beads:
            logger.info("Found %d eligible bead(s)", len(beads))

        for index, snapshot in enumerate(beads):
            if self.cancel_token.cancelled:
                break
            try:
                bead = self.store.load(snapshot.id)
            except (BeadNotFoundError, BeadFormatError, ValueError) as error:
                logger.warning("Skipping bead %s: %s", snapshot.id, error)
                continue
            if not bead.is_eligible:
                logger.info("Skipping bead %s: now %s", bead.id, bead.status.value)
                continue

            summary.record(self.executor.execute(bead))

            if index < len(beads) - 1 and self.cancel_token.wait(self.inter_item_pause_seconds):
                break
        return summary

    def run_forever(self, *, max_cycles: int | None = None) -> DaemonRunSummary:
        """Loop until cancelled (or ``max_cycles`` cycles have run)."""

        aggregate = DaemonRunSummary()
        self._init_storage()
        if self.pid_file is not None:
            self.pid_file.acquire()
        logger.info("Daemon started (PID: %s)", os.getpid())
        try:
            with self._signal_handlers():
                self._loop(aggregate=aggregate, max_cycles=max_cycles)
        finally:
            if self.pid_file is not None:
                self.pid_file.release()
            logger.info(
                "Daemon stopped (%s): cycles=%d dispatched=%d completed=%d",
                self.cancel_token.reason or "finished",
                aggregate.cycles,
                aggregate.dispatched,
                aggregate.completed,
            )
        return aggregate

    def _loop(self, *, aggregate: DaemonRunSummary, max_cycles: int | None) -> None:
        attempted = 0
        while not self.cancel_token.cancelled:
            if max_cycles is not None and attempted >= max_cycles:
                return
            attempted += 1
            try:
                cycle = self.run_cycle()
            except Exception:
                aggregate.failed_cycles += 1
                if self._record_failure(aggregate):
                    continue
            else:
                aggregate.add_cycle(cycle)
                self.consecutive_errors = 0
                self.backoff.reset()

            if max_cycles is not None and attempted >= max_cycles:
                return
            self.cancel_token.wait(self.poll_interval_seconds)

    def _record_failure(self, aggregate: DaemonRunSummary) -> bool:
        """Count a failed cycle; return True if a backoff sleep was taken."""

        self.consecutive_errors += 1
        logger.exception(
            "Daemon cycle failed (consecutive errors: %d/%d)",
            self.consecutive_errors,
            self.consecutive_error_threshold,
        )
        if self.consecutive_errors < self.consecutive_error_threshold:
            return False

        delay = self.backoff.next_delay()
        aggregate.restarts += 1
        logger.error(
            "Too many consecutive errors (%d); restarting loop in %.0fs",
            self.consecutive_errors,
            delay,
        )
        self.cancel_token.wait(delay)
        self.consecutive_errors = 0
        return True

    def _init_storage(self) -> None:
        self.store.ensure_dirs()
        for directory in self.extra_dirs:
            os.makedirs(directory, exist_ok=True)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.warning("Received %s; shutting down", name)
            self.cancel_token.cancel(reason=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def build_daemon(
    settings: Settings,
    *,
    cancel_token: CancellationToken | None = None,
    backend: WorkerBackend | None = None,
    completion_source: CompletionSource | None = None,
) -> BeadDaemon:
    """Wire store, reconciler, executor and daemon from one settings value."""

    token = cancel_token or CancellationToken()
    store = FileBeadStore(settings.beads_dir)
    if completion_source is None:
        completion_source = (
            PrdCompletionSource(settings.resolved_prd_path)
            if settings.worker.use_prd
            else NullCompletionSource()
        )
    executor = BeadExecutor(
        store=store,
        backend=backend or CliWorkerBackend(settings.worker.command_template),
        completion_source=completion_source,
        workspace=settings.workspace,
        log_dir=settings.log_dir,
        max_attempts=settings.daemon.max_attempts,
        timeout_seconds=settings.daemon.bead_timeout_seconds,
        prd_path=settings.resolved_prd_path if settings.worker.use_prd else None,
        cancel_token=token,
        graceful_shutdown_seconds=settings.daemon.graceful_shutdown_seconds,
    )
    return BeadDaemon(
        store=store,
        reconciler=Reconciler(store),
        executor=executor,
        cancel_token=token,
        pid_file=PidFile(settings.pid_file),
        poll_interval_seconds=settings.daemon.poll_interval_seconds,
        inter_item_pause_seconds=settings.daemon.inter_item_pause_seconds,
        stuck_threshold_seconds=settings.daemon.stuck_threshold_seconds,
        consecutive_error_threshold=settings.daemon.consecutive_error_threshold,
        restart_base_delay_seconds=settings.daemon.restart_base_delay_seconds,
        restart_max_delay_seconds=settings.daemon.restart_max_delay_seconds,
        extra_dirs=(settings.log_dir,),
    )
