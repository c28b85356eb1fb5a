"""File-backed bead persistence with crash-safe writes."""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Protocol

from bead_daemon.orchestrator.models import Bead, utc_now

logger = logging.getLogger(__name__)

BEAD_SUFFIX = ".json"
BACKUP_SUFFIX = ".bak"
TEMP_SUFFIX = ".tmp"


class BeadStoreError(RuntimeError):
    """Bead could not be persisted."""


class BeadNotFoundError(LookupError):
    """No record exists for the requested bead id."""


class BeadFormatError(ValueError):
    """Record file exists but is not a parsable bead."""


class BeadStore(Protocol):
    """Storage interface consumed by the reconciler, executor and daemon."""

    def ensure_dirs(self) -> None:
        """Create the storage location if it does not exist yet."""

    def load(self, bead_id: str) -> Bead:
        """Return a fully defaulted bead or raise ``BeadNotFoundError``."""

    def save(self, bead: Bead) -> None:
        """Persist the bead atomically."""

    def list_eligible(self) -> list[Bead]:
        """Return pending/retry beads in dispatch order."""

    def list_all(self) -> list[Bead]:
        """Return every readable bead."""

    def path_for(self, bead_id: str) -> Path:
        """Return the record location handed to worker processes."""


class FileBeadStore:
    """One JSON file per bead under ``beads_dir``.

    Writes go through a temp file in the same directory and ``os.replace``,
    with the previous version copied aside until the rename succeeds, so a
    reader always sees either the old or the new record in full.
    """

    def __init__(self, beads_dir: Path) -> None:
        self.beads_dir = beads_dir

    def ensure_dirs(self) -> None:
        self.beads_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, bead_id: str) -> Path:
        _validate_bead_id(bead_id)
        return self.beads_dir / f"{bead_id}{BEAD_SUFFIX}"

    def load(self, bead_id: str) -> Bead:
        path = self.path_for(bead_id)
        return _read_bead(path)

    def save(self, bead: Bead) -> None:
        if not bead.id or not bead.id.strip():
            raise ValueError("Bead id is required for save.")
        path = self.path_for(bead.id)

        now = utc_now()
        if bead.created_at is None:
            bead.created_at = now
        if bead.updated_at is None or bead.updated_at < now:
            bead.updated_at = now
        bead.meta.last_updated = bead.updated_at

        self._write_atomic(path, bead.to_dict())

    def list_eligible(self) -> list[Bead]:
        eligible = [bead for bead in self._iter_beads() if bead.is_eligible]
        eligible.sort(key=Bead.sort_key)
        return eligible

    def list_all(self) -> list[Bead]:
        beads = list(self._iter_beads())
        beads.sort(key=lambda bead: bead.id)
        return beads

    def _iter_beads(self) -> Iterator[Bead]:
        if not self.beads_dir.is_dir():
            return
        for path in sorted(self.beads_dir.glob(f"*{BEAD_SUFFIX}")):
            if not path.is_file():
                continue
            try:
                yield _read_bead(path)
            except BeadNotFoundError:
                continue
            except (BeadFormatError, OSError) as error:
                logger.warning("Skipping unreadable bead file %s: %s", path.name, error)

    def _write_atomic(self, path: Path, payload: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        backup_path = path.with_name(path.name + BACKUP_SUFFIX)
        temp_path: Path | None = None
        backup_created = False
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=path.parent,
                prefix=f".{path.stem}.",
                suffix=TEMP_SUFFIX,
                delete=False,
            ) as handle:
                temp_path = Path(handle.name)
                handle.write(_serialize(payload))
                handle.flush()
                os.fsync(handle.fileno())
            if path.exists():
                shutil.copy2(path, backup_path)
                backup_created = True
            os.replace(temp_path, path)
            temp_path = None
        except OSError as error:
            if backup_created:
                _restore_backup(backup_path, path)
            raise BeadStoreError(f"Failed to save bead file {path}: {error}") from error
        finally:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)

        if backup_created:
            try:
                backup_path.unlink(missing_ok=True)
            except OSError as error:
                logger.warning("Could not remove bead backup %s: %s", backup_path, error)


def _read_bead(path: Path) -> Bead:
    """Parse one record; the file name is the bead id."""

    try:
        raw_bytes = path.read_bytes()
    except FileNotFoundError as error:
        raise BeadNotFoundError(f"Bead not found: {path.stem}") from error
    try:
        payload = json.loads(raw_bytes.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise BeadFormatError(f"Invalid bead JSON in {path}: {error}") from error
    if not isinstance(payload, dict):
        raise BeadFormatError(f"Expected JSON object in {path}")
    bead = Bead.from_dict(payload, fallback_id=path.stem)
    if bead.id != path.stem:
        logger.warning(
            "Bead file %s declares id %r; using the file name",
            path.name,
            bead.id,
        )
        bead.id = path.stem
    return bead


def _serialize(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True) + "\n"


def _restore_backup(backup_path: Path, path: Path) -> None:
    try:
        shutil.copy2(backup_path, path)
    except OSError as error:
        logger.error("Could not restore bead backup %s: %s", backup_path, error)
        return
    backup_path.unlink(missing_ok=True)


def _validate_bead_id(bead_id: str) -> None:
    if not bead_id or not bead_id.strip():
        raise ValueError("Bead id must be a non-empty string.")
    if "/" in bead_id or "\\" in bead_id or bead_id in {".", ".."} or "\x00" in bead_id:
        raise ValueError(f"Bead id cannot be used as a file name: {bead_id!r}")
