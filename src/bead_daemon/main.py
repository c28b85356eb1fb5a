"""CLI entrypoint for bead-daemon."""

from pathlib import Path

import rich_click as click

from bead_daemon import __version__
from bead_daemon.orchestrator.controllers import (
    BeadsListCommand,
    BeadsRequeueCommand,
    BeadsResetStuckCommand,
    DaemonCliController,
    DaemonRunCommand,
    DaemonStatusCommand,
    DaemonStopCommand,
)
from bead_daemon.orchestrator.models import BeadStatus
from bead_daemon.orchestrator.pidfile import DaemonAlreadyRunningError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DaemonCliController()

_WORKSPACE_OPTION = click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project workspace. Defaults to BEAD_DAEMON_WORKSPACE or the current directory.",
)


@click.group()
@click.version_option(version=__version__, prog_name="bead-daemon")
def bead_daemon() -> None:
    """Bead work-item daemon CLI."""


@bead_daemon.group()
def daemon() -> None:
    """Daemon lifecycle commands."""


@daemon.command("run")
@_WORKSPACE_OPTION
@click.option(
    "--once/--forever",
    default=False,
    show_default=True,
    help="Run a single poll cycle and exit, or loop until stopped.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many poll cycles (ignored with --once).",
)
def daemon_run(workspace: Path | None, once: bool, max_cycles: int | None) -> None:
    """Poll the bead store and dispatch eligible beads to the worker command."""

    try:
        lines = CONTROLLER.run_daemon(
            DaemonRunCommand(workspace=workspace, once=once, max_cycles=max_cycles),
        )
    except (ValueError, DaemonAlreadyRunningError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@daemon.command("status")
@_WORKSPACE_OPTION
@click.option(
    "--log-lines",
    type=click.IntRange(min=0, max=200),
    default=10,
    show_default=True,
    help="How many trailing daemon log lines to print.",
)
def daemon_status(workspace: Path | None, log_lines: int) -> None:
    """Show daemon liveness, bead counts and recent log output."""

    _emit_lines(
        CONTROLLER.status(DaemonStatusCommand(workspace=workspace, log_lines=log_lines)),
    )


@daemon.command("stop")
@_WORKSPACE_OPTION
def daemon_stop(workspace: Path | None) -> None:
    """Ask a running daemon to shut down gracefully."""

    _emit_lines(CONTROLLER.stop(DaemonStopCommand(workspace=workspace)))


@bead_daemon.group()
def beads() -> None:
    """Bead inspection and operator commands."""


@beads.command("list")
@_WORKSPACE_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in BeadStatus], case_sensitive=False),
    default=None,
    help="Only list beads in this status.",
)
def beads_list(workspace: Path | None, status: str | None) -> None:
    """List beads with their status and attempt counters."""

    _emit_lines(CONTROLLER.list_beads(BeadsListCommand(workspace=workspace, status=status)))


@beads.command("reset-stuck")
@_WORKSPACE_OPTION
def beads_reset_stuck(workspace: Path | None) -> None:
    """Move beads stuck in progress past the threshold back to retry."""

    _emit_lines(CONTROLLER.reset_stuck(BeadsResetStuckCommand(workspace=workspace)))


@beads.command("requeue")
@_WORKSPACE_OPTION
@click.option("--bead-id", required=True, help="Bead id to move back to pending.")
def beads_requeue(workspace: Path | None, bead_id: str) -> None:
    """Move a failed or blocked bead back to pending with counters cleared."""

    try:
        lines = CONTROLLER.requeue(BeadsRequeueCommand(workspace=workspace, bead_id=bead_id))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    bead_daemon()
