"""Operator-facing snapshot of daemon and bead state."""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from bead_daemon.logging_config import DAEMON_LOG_NAME
from bead_daemon.orchestrator.models import BeadStatus, utc_now
from bead_daemon.orchestrator.pidfile import PidFile
from bead_daemon.orchestrator.reconciler import is_stuck
from bead_daemon.orchestrator.store import BeadStore


@dataclass(slots=True)
class DaemonStatus:
    """Point-in-time view used by ``daemon status``."""

    pid: int | None
    stale_pid: int | None
    counts: dict[BeadStatus, int]
    stuck_ids: list[str]
    recent_log_lines: list[str] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.pid is not None

    @property
    def total(self) -> int:
        return sum(self.counts.values())


def collect_status(  # noqa: PLR0913
    *,
    store: BeadStore,
    pid_file: PidFile,
    log_dir: Path,
    stuck_threshold: timedelta,
    log_lines: int = 10,
    now: datetime | None = None,
) -> DaemonStatus:
    current = now or utc_now()
    counts: Counter[BeadStatus] = Counter()
    stuck_ids: list[str] = []
    for bead in store.list_all():
        counts[bead.status] += 1
        if is_stuck(bead, stuck_threshold, current):
            stuck_ids.append(bead.id)

    pid = pid_file.running_pid()
    recorded = pid_file.read()
    return DaemonStatus(
        pid=pid,
        stale_pid=recorded if pid is None else None,
        counts={status: counts.get(status, 0) for status in BeadStatus},
        stuck_ids=stuck_ids,
        recent_log_lines=tail_lines(log_dir / DAEMON_LOG_NAME, log_lines),
    )


def render_status_lines(status: DaemonStatus) -> list[str]:
    if status.running:
        lines = [f"Daemon: running (PID: {status.pid})"]
    elif status.stale_pid is not None:
        lines = [f"Daemon: not running (stale pid file for PID {status.stale_pid})"]
    else:
        lines = ["Daemon: not running"]

    lines.append(f"Beads: {status.total}")
    for bead_status, count in status.counts.items():
        lines.append(f"  {bead_status.value}: {count}")
    lines.append(f"Stuck: {len(status.stuck_ids)}")
    for bead_id in status.stuck_ids:
        lines.append(f"  {bead_id}")

    if status.recent_log_lines:
        lines.append("Recent log:")
        lines.extend(f"  {line}" for line in status.recent_log_lines)
    return lines


def tail_lines(path: Path, limit: int) -> list[str]:
    if limit <= 0:
        return []
    try:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            return [line.rstrip("\n") for line in deque(handle, maxlen=limit)]
    except FileNotFoundError:
        return []
