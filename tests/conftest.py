"""Shared test fixtures."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import pytest

from bead_daemon.orchestrator.store import FileBeadStore

ECHO_WORKER_COMMAND = (
    f"{sys.executable} -m bead_daemon.orchestrator.backend.echo_worker --bead-path {{bead_path}}"
)

_BEAD_DAEMON_ENV = (
    "BEAD_DAEMON_WORKSPACE",
    "BEAD_DAEMON_STATE_DIR",
    "BEAD_DAEMON_PRD_PATH",
    "BEAD_DAEMON_LOG_LEVEL",
    "BEAD_DAEMON_POLL_INTERVAL_SECONDS",
    "BEAD_DAEMON_BEAD_TIMEOUT_SECONDS",
    "BEAD_DAEMON_MAX_ATTEMPTS",
    "BEAD_DAEMON_STUCK_THRESHOLD_SECONDS",
    "BEAD_DAEMON_INTER_ITEM_PAUSE_SECONDS",
    "BEAD_DAEMON_CONSECUTIVE_ERROR_THRESHOLD",
    "BEAD_DAEMON_RESTART_BASE_DELAY_SECONDS",
    "BEAD_DAEMON_RESTART_MAX_DELAY_SECONDS",
    "BEAD_DAEMON_GRACEFUL_SHUTDOWN_SECONDS",
    "BEAD_DAEMON_WORKER_COMMAND",
    "BEAD_DAEMON_USE_PRD",
)


@pytest.fixture(autouse=True)
def _clean_bead_daemon_env(monkeypatch):
    """Keep developer shell settings out of the tests."""
    for name in _BEAD_DAEMON_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def beads_dir(tmp_path: Path) -> Path:
    path = tmp_path / ".bead-daemon" / "beads"
    path.mkdir(parents=True)
    return path


@pytest.fixture()
def store(beads_dir: Path) -> FileBeadStore:
    return FileBeadStore(beads_dir)


def write_bead(beads_dir: Path, bead_id: str, **fields: Any) -> Path:
    """Write a raw bead record the way a human or an agent would."""

    payload: dict[str, Any] = {"id": bead_id, "status": "pending"}
    payload.update(fields)
    path = beads_dir / f"{bead_id}.json"
    path.write_text(json.dumps(payload, indent=2), "utf-8")
    return path


def write_prd(path: Path, stories: dict[str, bool]) -> Path:
    path.write_text(
        json.dumps(
            {"userStories": [{"id": key, "passes": value} for key, value in stories.items()]},
            indent=2,
        ),
        "utf-8",
    )
    return path
