"""Independent completion sources consulted after a worker exits successfully."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CompletionLookup:
    """Answer from a source of truth about one bead."""

    done: bool
    found: bool = True


class CompletionSource(Protocol):
    """Read-only view into an externally owned completion record."""

    def lookup(self, bead_id: str) -> CompletionLookup:
        """Return whether the task behind ``bead_id`` is done."""


class NullCompletionSource:
    """Used when no external record is configured; never confirms completion."""

    def lookup(self, bead_id: str) -> CompletionLookup:  # noqa: ARG002
        return CompletionLookup(done=False, found=False)


class PrdCompletionSource:
    """Reads ``userStories[].passes`` from a PRD JSON document.

    The file is re-read on every lookup because the coding agent edits it
    while the worker runs.
    """

    def __init__(self, prd_path: Path) -> None:
        self.prd_path = prd_path

    def lookup(self, bead_id: str) -> CompletionLookup:
        try:
            document = _load_prd(self.prd_path)
        except FileNotFoundError:
            logger.warning("PRD file not found at %s", self.prd_path)
            return CompletionLookup(done=False, found=False)
        except (OSError, TypeError, ValueError) as error:
            logger.warning("Could not read PRD file %s: %s", self.prd_path, error)
            return CompletionLookup(done=False, found=False)

        stories = document.get("userStories")
        if not isinstance(stories, list):
            return CompletionLookup(done=False, found=False)
        for story in stories:
            if isinstance(story, dict) and story.get("id") == bead_id:
                return CompletionLookup(done=story.get("passes") is True, found=True)
        return CompletionLookup(done=False, found=False)


def _load_prd(path: Path) -> dict[str, Any]:
    payload = json.loads(path.read_bytes().decode("utf-8-sig"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload
