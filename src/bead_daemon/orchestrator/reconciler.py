"""Stuck-bead recovery run once per daemon cycle."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from bead_daemon.orchestrator.models import Bead, BeadStatus, utc_now
from bead_daemon.orchestrator.store import BeadStore, BeadStoreError

logger = logging.getLogger(__name__)


class Reconciler:
    """Moves beads stranded in ``in_progress`` back to ``retry``.

    A bead only stays ``in_progress`` past the threshold when the daemon that
    dispatched it died mid-execution, so this pass is what lets a restarted
    daemon pick the work up again.
    """

    def __init__(self, store: BeadStore) -> None:
        self.store = store

    def reset_stale(self, threshold: timedelta, *, now: datetime | None = None) -> list[str]:
        """Reset every bead stuck longer than ``threshold``; return their ids."""

        current = now or utc_now()
        reset_ids: list[str] = []
        for bead in self.store.list_all():
            if not is_stuck(bead, threshold, current):
                continue
            age = in_progress_age(bead, current)

            reason = (
                f"Stuck in progress for {_format_age(age)}"
                if age is not None
                else "Stuck in progress with no recorded attempt time"
            )
            bead.status = BeadStatus.RETRY
            bead.meta.stuck_count += 1
            bead.meta.last_error = reason
            bead.meta.reset_reason = reason
            bead.meta.reset_at = current
            try:
                self.store.save(bead)
            except (BeadStoreError, ValueError):
                logger.exception("Could not reset stuck bead %s", bead.id)
                continue
            logger.warning("Reset stuck bead %s: %s", bead.id, reason)
            reset_ids.append(bead.id)
        return reset_ids


def is_stuck(bead: Bead, threshold: timedelta, now: datetime) -> bool:
    if bead.status != BeadStatus.IN_PROGRESS:
        return False
    age = in_progress_age(bead, now)
    return age is None or age > threshold


def in_progress_age(bead: Bead, now: datetime) -> timedelta | None:
    """Time since the bead was dispatched, or None when nothing was recorded."""

    started = bead.meta.last_attempt or bead.updated_at
    if started is None:
        return None
    return now - started


def _format_age(age: timedelta | None) -> str:
    if age is None:
        return "an unknown time"
    total_minutes = int(age.total_seconds() // 60)
    hours, minutes = divmod(total_minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
