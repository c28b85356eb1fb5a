"""Process identity marker used by status and stop commands."""

from __future__ import annotations

import logging
import os
import signal
from pathlib import Path

logger = logging.getLogger(__name__)


class DaemonAlreadyRunningError(RuntimeError):
    """Another live daemon owns the pid file."""

    def __init__(self, pid: int) -> None:
        super().__init__(f"Daemon is already running (PID: {pid})")
        self.pid = pid


class PidFile:
    """Pid marker at a well-known path; removed on clean shutdown."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._owned_pid: int | None = None

    def read(self) -> int | None:
        try:
            raw = self.path.read_text("utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as error:
            logger.warning("Could not read pid file %s: %s", self.path, error)
            return None
        try:
            pid = int(raw)
        except ValueError:
            return None
        return pid if pid > 0 else None

    def running_pid(self) -> int | None:
        """Pid of the live daemon, or None when absent or stale."""

        pid = self.read()
        if pid is None or not process_alive(pid):
            return None
        return pid

    def acquire(self) -> None:
        pid = self.running_pid()
        if pid is not None and pid != os.getpid():
            raise DaemonAlreadyRunningError(pid)
        if self.path.exists():
            logger.warning("Removing stale pid file %s", self.path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{os.getpid()}\n", "utf-8")
        self._owned_pid = os.getpid()

    def release(self) -> None:
        if self._owned_pid is None:
            return
        if self.read() == self._owned_pid:
            self.path.unlink(missing_ok=True)
        self._owned_pid = None

    def clear_stale(self) -> bool:
        """Remove the marker if it points to a dead process."""

        if not self.path.exists() or self.running_pid() is not None:
            return False
        self.path.unlink(missing_ok=True)
        return True

    def signal_stop(self) -> int | None:
        """Send SIGTERM to the recorded daemon; return its pid if signalled."""

        pid = self.running_pid()
        if pid is None:
            return None
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return None
        return pid


def process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True
