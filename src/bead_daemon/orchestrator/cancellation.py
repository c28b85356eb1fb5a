"""Cooperative cancellation shared by every blocking wait in the daemon."""

from __future__ import annotations

import threading


class CancellationToken:
    """One-way stop flag that also wakes sleepers immediately."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "requested") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""

        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(timeout=seconds)
