"""Controllers for daemon and bead CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from bead_daemon.config import Settings
from bead_daemon.logging_config import configure_logging
from bead_daemon.orchestrator.daemon import build_daemon
from bead_daemon.orchestrator.models import BeadStatus, utc_now
from bead_daemon.orchestrator.pidfile import PidFile
from bead_daemon.orchestrator.reconciler import Reconciler
from bead_daemon.orchestrator.status import collect_status, render_status_lines
from bead_daemon.orchestrator.store import BeadNotFoundError, FileBeadStore

REQUEUEABLE_STATUSES = frozenset({BeadStatus.FAILED, BeadStatus.BLOCKED, BeadStatus.RETRY})


@dataclass(slots=True)
class DaemonRunCommand:
    """CLI input for the daemon loop."""

    workspace: Path | None
    once: bool
    max_cycles: int | None = None


@dataclass(slots=True)
class DaemonStatusCommand:
    """CLI input for status snapshot."""

    workspace: Path | None
    log_lines: int = 10


@dataclass(slots=True)
class DaemonStopCommand:
    """CLI input for stopping a running daemon."""

    workspace: Path | None


@dataclass(slots=True)
class BeadsListCommand:
    """CLI input for bead listing."""

    workspace: Path | None
    status: str | None


@dataclass(slots=True)
class BeadsResetStuckCommand:
    """CLI input for a one-off stuck-bead reset."""

    workspace: Path | None


@dataclass(slots=True)
class BeadsRequeueCommand:
    """CLI input for operator requeue of a finished bead."""

    workspace: Path | None
    bead_id: str


class DaemonCliController:
    """Coordinates daemon lifecycle and bead inspection CLI operations."""

    def run_daemon(self, command: DaemonRunCommand) -> list[str]:
        settings = Settings.from_env(workspace=command.workspace)
        settings.validate_for_daemon()
        log_path = configure_logging(settings.log_dir, settings.log_level)

        daemon = build_daemon(settings)
        max_cycles = 1 if command.once else command.max_cycles
        summary = daemon.run_forever(max_cycles=max_cycles)

        return [
            "Daemon summary: "
            f"cycles={summary.cycles} failed_cycles={summary.failed_cycles} "
            f"restarts={summary.restarts} dispatched={summary.dispatched} "
            f"completed={summary.completed} retried={summary.retried} "
            f"failed={summary.failed} blocked={summary.blocked} "
            f"timeouts={summary.timeouts} reset_stuck={summary.reset_stuck}",
            f"Log: {log_path}",
        ]

    def status(self, command: DaemonStatusCommand) -> list[str]:
        settings = Settings.from_env(workspace=command.workspace)
        snapshot = collect_status(
            store=FileBeadStore(settings.beads_dir),
            pid_file=PidFile(settings.pid_file),
            log_dir=settings.log_dir,
            stuck_threshold=timedelta(seconds=settings.daemon.stuck_threshold_seconds),
            log_lines=command.log_lines,
        )
        return render_status_lines(snapshot)

    def stop(self, command: DaemonStopCommand) -> list[str]:
        settings = Settings.from_env(workspace=command.workspace)
        pid_file = PidFile(settings.pid_file)
        pid = pid_file.signal_stop()
        if pid is not None:
            return [f"Sent SIGTERM to daemon (PID: {pid})"]
        if pid_file.clear_stale():
            return ["Daemon is not running; removed stale pid file."]
        return ["Daemon is not running."]

    def list_beads(self, command: BeadsListCommand) -> list[str]:
        settings = Settings.from_env(workspace=command.workspace)
        status_filter = _parse_status(command.status)
        beads = FileBeadStore(settings.beads_dir).list_all()
        if status_filter is not None:
            beads = [bead for bead in beads if bead.status == status_filter]

        lines = [f"Beads: {len(beads)}"]
        for bead in beads:
            priority = "-" if bead.priority is None else str(bead.priority)
            lines.append(
                f"  {bead.id} status={bead.status.value} priority={priority} "
                f"attempts={bead.meta.attempt_count} timeouts={bead.meta.timeout_count} "
                f"title={bead.title or '-'}",
            )
            if bead.meta.last_error:
                lines.append(f"    last_error={bead.meta.last_error}")
        return lines

    def reset_stuck(self, command: BeadsResetStuckCommand) -> list[str]:
        settings = Settings.from_env(workspace=command.workspace)
        reconciler = Reconciler(FileBeadStore(settings.beads_dir))
        reset_ids = reconciler.reset_stale(
            timedelta(seconds=settings.daemon.stuck_threshold_seconds),
        )
        if not reset_ids:
            return ["No stuck beads found."]
        return [f"Reset {len(reset_ids)} stuck bead(s):", *(f"  {bead_id}" for bead_id in reset_ids)]

    def requeue(self, command: BeadsRequeueCommand) -> list[str]:
        settings = Settings.from_env(workspace=command.workspace)
        store = FileBeadStore(settings.beads_dir)
        try:
            bead = store.load(command.bead_id)
        except BeadNotFoundError:
            return [f"Bead not found: {command.bead_id}"]
        if bead.status not in REQUEUEABLE_STATUSES:
            return [
                f"Bead {bead.id} is {bead.status.value}; only failed, blocked or "
                "retry beads can be requeued.",
            ]

        previous = bead.status
        bead.status = BeadStatus.PENDING
        bead.meta.attempt_count = 0
        bead.meta.timeout_count = 0
        bead.meta.last_error = None
        bead.meta.reset_reason = f"Requeued by operator from {previous.value}"
        bead.meta.reset_at = utc_now()
        store.save(bead)
        return [f"Bead re-queued: {bead.id} ({previous.value} -> {bead.status.value})"]


def _parse_status(value: str | None) -> BeadStatus | None:
    if value is None:
        return None
    return BeadStatus(value.strip().lower())
