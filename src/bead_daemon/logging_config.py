"""Process-wide logging setup for the daemon command."""

from __future__ import annotations

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from rich.logging import RichHandler

DAEMON_LOG_NAME = "daemon.log"
LOG_BACKUP_DAYS = 14

_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(log_dir: Path | None, level: str = "INFO") -> Path | None:
    """Attach console and (optionally) rotating file handlers to the package logger.

    Returns the daemon log path when a file handler was installed. Calling it
    again replaces previously installed handlers instead of stacking them.
    """

    package_logger = logging.getLogger("bead_daemon")
    package_logger.setLevel(level.upper())
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    console = RichHandler(rich_tracebacks=True, show_path=False, log_time_format="[%X]")
    console.setFormatter(logging.Formatter("%(message)s"))
    package_logger.addHandler(console)

    if log_dir is None:
        return None
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / DAEMON_LOG_NAME
    file_handler = TimedRotatingFileHandler(
        log_path,
        when="midnight",
        backupCount=LOG_BACKUP_DAYS,
        encoding="utf-8",
    )
    file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_DATE_FORMAT))
    package_logger.addHandler(file_handler)
    return log_path
