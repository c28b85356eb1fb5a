from __future__ import annotations

import json
import os
import signal
import subprocess
import sys
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from conftest import ECHO_WORKER_COMMAND, write_bead, write_prd

from bead_daemon.config import DaemonSettings, Settings, WorkerSettings
from bead_daemon.orchestrator.backend import WorkerRunRequest, WorkerRunResult
from bead_daemon.orchestrator.cancellation import CancellationToken
from bead_daemon.orchestrator.completion import NullCompletionSource
from bead_daemon.orchestrator.daemon import BeadDaemon, RestartBackoff, build_daemon
from bead_daemon.orchestrator.executor import BeadExecutor
from bead_daemon.orchestrator.models import Bead, BeadStatus, utc_now
from bead_daemon.orchestrator.pidfile import DaemonAlreadyRunningError, PidFile
from bead_daemon.orchestrator.reconciler import Reconciler
from bead_daemon.orchestrator.store import BeadStore, FileBeadStore

pytestmark = [
    allure.epic("Bead Daemon"),
    allure.feature("Daemon Loop"),
]


class _RecordingToken(CancellationToken):
    """Records requested sleeps instead of sleeping."""

    def __init__(self) -> None:
        super().__init__()
        self.waits: list[float] = []

    def wait(self, seconds: float) -> bool:
        self.waits.append(seconds)
        return self.cancelled


class _CompletingBackend:
    def __init__(self, on_run: Callable[[WorkerRunRequest], None] | None = None) -> None:
        self.order: list[str] = []
        self.on_run = on_run

    def run(self, request: WorkerRunRequest) -> WorkerRunResult:
        self.order.append(request.bead_id)
        payload = json.loads(request.bead_path.read_text("utf-8"))
        payload["status"] = "completed"
        request.bead_path.write_text(json.dumps(payload), "utf-8")
        if self.on_run is not None:
            self.on_run(request)
        return WorkerRunResult(
            exit_code=0,
            timed_out=False,
            cancelled=False,
            duration_seconds=0.01,
            log_path=request.log_path,
        )


class _ScriptedReconciler:
    """Fails or succeeds per call according to ``script``."""

    def __init__(self, script: list[bool]) -> None:
        self.script = list(script)

    def reset_stale(self, threshold: timedelta) -> list[str]:  # noqa: ARG002
        if self.script.pop(0):
            raise RuntimeError("bead directory unreadable")
        return []


def _daemon(
    store: BeadStore,
    tmp_path: Path,
    *,
    backend=None,
    token: CancellationToken | None = None,
    reconciler=None,
    pid_file: PidFile | None = None,
    consecutive_error_threshold: int = 3,
    poll_interval_seconds: float = 0.0,
) -> BeadDaemon:
    cancel_token = token or CancellationToken()
    executor = BeadExecutor(
        store=store,
        backend=backend or _CompletingBackend(),
        completion_source=NullCompletionSource(),
        workspace=tmp_path,
        log_dir=tmp_path / "logs",
        cancel_token=cancel_token,
    )
    return BeadDaemon(
        store=store,
        reconciler=reconciler or Reconciler(store),
        executor=executor,
        cancel_token=cancel_token,
        pid_file=pid_file,
        poll_interval_seconds=poll_interval_seconds,
        inter_item_pause_seconds=0.0,
        consecutive_error_threshold=consecutive_error_threshold,
    )


def test_restart_backoff_doubles_to_cap_and_resets() -> None:
    backoff = RestartBackoff(base_seconds=30, max_seconds=600)

    delays = [backoff.next_delay() for _ in range(7)]
    backoff.reset()

    assert delays == [30, 60, 120, 240, 480, 600, 600]
    assert backoff.next_delay() == 30


def test_cycle_dispatches_higher_priority_first(
    store: FileBeadStore,
    beads_dir: Path,
    tmp_path: Path,
) -> None:
    write_bead(beads_dir, "B", priority=2)
    write_bead(beads_dir, "A", priority=1)
    backend = _CompletingBackend()

    summary = _daemon(store, tmp_path, backend=backend).run_cycle()

    assert backend.order == ["A", "B"]
    assert summary.eligible == 2
    assert summary.completed == 2
    assert store.load("A").status == BeadStatus.COMPLETED
    assert store.load("B").status == BeadStatus.COMPLETED


def test_cycle_recovers_stuck_bead_before_dispatch(
    store: FileBeadStore,
    beads_dir: Path,
    tmp_path: Path,
) -> None:
    write_bead(
        beads_dir,
        "stuck",
        status="in_progress",
        meta={"attempt_count": 1, "last_attempt": (utc_now() - timedelta(hours=3)).isoformat()},
    )
    backend = _CompletingBackend()

    summary = _daemon(store, tmp_path, backend=backend).run_cycle()

    bead = store.load("stuck")
    assert summary.reset_stuck == 1
    assert backend.order == ["stuck"]
    assert bead.status == BeadStatus.COMPLETED
    assert bead.meta.stuck_count == 1
    assert bead.meta.attempt_count == 2


def test_cycle_skips_bead_no_longer_eligible(
    store: FileBeadStore,
    beads_dir: Path,
    tmp_path: Path,
    monkeypatch,
) -> None:
    write_bead(beads_dir, "done", status="completed")
    monkeypatch.setattr(store, "list_eligible", lambda: [Bead(id="done")])
    backend = _CompletingBackend()

    summary = _daemon(store, tmp_path, backend=backend).run_cycle()

    assert backend.order == []
    assert summary.dispatched == 0


def test_cancellation_stops_dispatch_between_beads(
    store: FileBeadStore,
    beads_dir: Path,
    tmp_path: Path,
) -> None:
    write_bead(beads_dir, "A", priority=1)
    write_bead(beads_dir, "B", priority=2)
    token = CancellationToken()
    backend = _CompletingBackend(on_run=lambda _: token.cancel(reason="test"))

    summary = _daemon(store, tmp_path, backend=backend, token=token).run_cycle()

    assert backend.order == ["A"]
    assert summary.dispatched == 1
    assert store.load("B").status == BeadStatus.PENDING


def test_consecutive_failures_trigger_growing_restart_delays(
    store: FileBeadStore,
    tmp_path: Path,
) -> None:
    token = _RecordingToken()
    daemon = _daemon(
        store,
        tmp_path,
        token=token,
        reconciler=_ScriptedReconciler([True] * 5),
        consecutive_error_threshold=2,
        poll_interval_seconds=5,
    )

    summary = daemon.run_forever(max_cycles=5)

    assert token.waits == [5, 30, 5, 60]
    assert summary.failed_cycles == 5
    assert summary.restarts == 2
    assert summary.cycles == 0


def test_successful_cycle_resets_error_count_and_backoff(
    store: FileBeadStore,
    tmp_path: Path,
) -> None:
    token = _RecordingToken()
    daemon = _daemon(
        store,
        tmp_path,
        token=token,
        reconciler=_ScriptedReconciler([True, True, False, True, True]),
        consecutive_error_threshold=2,
        poll_interval_seconds=5,
    )

    summary = daemon.run_forever(max_cycles=5)

    assert token.waits == [5, 30, 5, 5, 30]
    assert summary.cycles == 1
    assert summary.restarts == 2


def test_run_forever_writes_and_removes_pid_file(
    store: FileBeadStore,
    beads_dir: Path,
    tmp_path: Path,
) -> None:
    pid_path = tmp_path / "daemon.pid"
    seen: list[str] = []
    write_bead(beads_dir, "A")
    backend = _CompletingBackend(on_run=lambda _: seen.append(pid_path.read_text("utf-8")))

    _daemon(store, tmp_path, backend=backend, pid_file=PidFile(pid_path)).run_forever(
        max_cycles=1,
    )

    assert seen == [f"{os.getpid()}\n"]
    assert not pid_path.exists()


def test_run_forever_refuses_when_another_daemon_is_alive(
    store: FileBeadStore,
    tmp_path: Path,
) -> None:
    other = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])  # noqa: S603
    try:
        pid_path = tmp_path / "daemon.pid"
        pid_path.write_text(f"{other.pid}\n", "utf-8")

        with pytest.raises(DaemonAlreadyRunningError):
            _daemon(store, tmp_path, pid_file=PidFile(pid_path)).run_forever(max_cycles=1)

        assert pid_path.read_text("utf-8") == f"{other.pid}\n"
    finally:
        other.kill()
        other.wait()


def test_sigterm_cancels_loop_and_restores_handlers(
    store: FileBeadStore,
    beads_dir: Path,
    tmp_path: Path,
) -> None:
    write_bead(beads_dir, "A", priority=1)
    write_bead(beads_dir, "B", priority=2)
    original_handler = signal.getsignal(signal.SIGTERM)
    token = CancellationToken()
    backend = _CompletingBackend(on_run=lambda _: os.kill(os.getpid(), signal.SIGTERM))

    summary = _daemon(store, tmp_path, backend=backend, token=token).run_forever()

    assert token.cancelled is True
    assert token.reason == "SIGTERM"
    assert backend.order == ["A"]
    assert summary.completed == 1
    assert signal.getsignal(signal.SIGTERM) == original_handler


def test_build_daemon_runs_real_workers_end_to_end(tmp_path: Path) -> None:
    settings = Settings(
        workspace=tmp_path,
        daemon=DaemonSettings(poll_interval_seconds=0, inter_item_pause_seconds=0),
        worker=WorkerSettings(
            command_template=ECHO_WORKER_COMMAND + " --prd-path {prd_path} --mark-passes",
        ),
    )
    settings.beads_dir.mkdir(parents=True)
    write_bead(settings.beads_dir, "US-1", priority=1)
    write_bead(settings.beads_dir, "US-2", priority=2)
    write_prd(settings.resolved_prd_path, {"US-1": False, "US-2": False})

    summary = build_daemon(settings).run_forever(max_cycles=1)

    store = FileBeadStore(settings.beads_dir)
    assert summary.cycles == 1
    assert summary.completed == 2
    assert store.load("US-1").status == BeadStatus.COMPLETED
    assert store.load("US-2").status == BeadStatus.COMPLETED
    assert len(list(settings.log_dir.glob("bead-US-1-*.log"))) == 1
    assert not settings.pid_file.exists()


def test_record_with_unusable_id_does_not_stall_later_beads(
    store: FileBeadStore,
    beads_dir: Path,
    tmp_path: Path,
) -> None:
    (beads_dir / "a.json").write_text(
        '{"id": "epic/1", "status": "pending", "priority": 1}',
        "utf-8",
    )
    (beads_dir / "x\\y.json").write_text('{"status": "pending", "priority": 1}', "utf-8")
    write_bead(beads_dir, "B", priority=2)
    backend = _CompletingBackend()

    summary = _daemon(store, tmp_path, backend=backend).run_cycle()

    assert backend.order == ["a", "B"]
    assert summary.completed == 2
    assert store.load("B").status == BeadStatus.COMPLETED
    assert sorted(path.name for path in beads_dir.iterdir()) == ["B.json", "a.json", "x\\y.json"]


class _DelegatingStore:
    """Minimal ``BeadStore`` implementation wrapping the file store."""

    def __init__(self, inner: FileBeadStore) -> None:
        self.inner = inner
        self.ensured = False

    def ensure_dirs(self) -> None:
        self.ensured = True
        self.inner.ensure_dirs()

    def load(self, bead_id: str) -> Bead:
        return self.inner.load(bead_id)

    def save(self, bead: Bead) -> None:
        self.inner.save(bead)

    def list_eligible(self) -> list[Bead]:
        return self.inner.list_eligible()

    def list_all(self) -> list[Bead]:
        return self.inner.list_all()

    def path_for(self, bead_id: str) -> Path:
        return self.inner.path_for(bead_id)


def test_daemon_runs_against_any_bead_store(
    store: FileBeadStore,
    beads_dir: Path,
    tmp_path: Path,
) -> None:
    write_bead(beads_dir, "A")
    wrapped = _DelegatingStore(store)
    backend = _CompletingBackend()

    summary = _daemon(wrapped, tmp_path, backend=backend).run_forever(max_cycles=1)

    assert wrapped.ensured is True
    assert backend.order == ["A"]
    assert summary.completed == 1
