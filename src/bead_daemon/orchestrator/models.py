"""Domain models for beads and daemon execution results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


class BeadStatus(str, Enum):
    """Durable bead lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"
    BLOCKED = "blocked"


ELIGIBLE_STATUSES: frozenset[BeadStatus] = frozenset({BeadStatus.PENDING, BeadStatus.RETRY})
TERMINAL_STATUSES: frozenset[BeadStatus] = frozenset(
    {BeadStatus.COMPLETED, BeadStatus.FAILED, BeadStatus.BLOCKED},
)

_STATUS_ALIASES: dict[str, BeadStatus] = {
    "open": BeadStatus.PENDING,
    "todo": BeadStatus.PENDING,
    "queued": BeadStatus.PENDING,
    "running": BeadStatus.IN_PROGRESS,
    "done": BeadStatus.COMPLETED,
    "complete": BeadStatus.COMPLETED,
}

_META_KEYS = (
    "attempt_count",
    "timeout_count",
    "stuck_count",
    "last_attempt",
    "last_error",
    "last_updated",
    "reset_reason",
    "reset_at",
)
_BEAD_KEYS = (
    "id",
    "type",
    "status",
    "priority",
    "title",
    "intent",
    "description",
    "meta",
    "created_at",
    "updated_at",
)
_LEGACY_META_KEY = "ralph_meta"


class ExecutionOutcome(str, Enum):
    """Result of one executor call."""

    COMPLETED = "completed"
    RETRY = "retry"
    FAILED = "failed"
    BLOCKED = "blocked"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass(slots=True)
class BeadMeta:
    """Execution metadata maintained by the daemon."""

    attempt_count: int = 0
    timeout_count: int = 0
    stuck_count: int = 0
    last_attempt: datetime | None = None
    last_error: str | None = None
    last_updated: datetime | None = None
    reset_reason: str | None = None
    reset_at: datetime | None = None

    @classmethod
    def from_dict(cls, raw: object) -> BeadMeta:
        data = raw if isinstance(raw, dict) else {}
        return cls(
            attempt_count=_coerce_count(data.get("attempt_count")),
            timeout_count=_coerce_count(data.get("timeout_count")),
            stuck_count=_coerce_count(data.get("stuck_count")),
            last_attempt=_coerce_datetime(data.get("last_attempt")),
            last_error=_coerce_optional_text(data.get("last_error")),
            last_updated=_coerce_datetime(data.get("last_updated")),
            reset_reason=_coerce_optional_text(data.get("reset_reason")),
            reset_at=_coerce_datetime(data.get("reset_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_count": self.attempt_count,
            "timeout_count": self.timeout_count,
            "stuck_count": self.stuck_count,
            "last_attempt": _format_datetime(self.last_attempt),
            "last_error": self.last_error,
            "last_updated": _format_datetime(self.last_updated),
            "reset_reason": self.reset_reason,
            "reset_at": _format_datetime(self.reset_at),
        }


@dataclass(slots=True)
class Bead:
    """One schedulable unit of work.

    ``from_dict`` fills every missing or malformed field with its default, so
    code downstream of the store can rely on a fully populated record no
    matter how old or hand-written the source file is. Keys the model does not
    know are kept in ``extra`` and written back unchanged.
    """

    id: str
    type: str = "task"
    status: BeadStatus = BeadStatus.PENDING
    priority: int | None = None
    title: str = ""
    intent: str = ""
    description: str = ""
    meta: BeadMeta = field(default_factory=BeadMeta)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, fallback_id: str = "") -> Bead:
        bead_id = raw.get("id")
        if not isinstance(bead_id, str) or not bead_id.strip():
            bead_id = fallback_id
        meta_raw = raw.get("meta")
        if meta_raw is None:
            meta_raw = raw.get(_LEGACY_META_KEY)
        meta = BeadMeta.from_dict(meta_raw)
        status, unknown_status = _coerce_status(raw.get("status"))
        if unknown_status is not None:
            meta.last_error = f"Unrecognized status {unknown_status!r}; blocked for review."
        extra = {
            key: value
            for key, value in raw.items()
            if key not in _BEAD_KEYS and key != _LEGACY_META_KEY
        }
        return cls(
            id=bead_id.strip(),
            type=_coerce_text(raw.get("type")) or "task",
            status=status,
            priority=_coerce_priority(raw.get("priority")),
            title=_coerce_text(raw.get("title")),
            intent=_coerce_text(raw.get("intent")),
            description=_coerce_text(raw.get("description")),
            meta=meta,
            created_at=_coerce_datetime(raw.get("created_at")),
            updated_at=_coerce_datetime(raw.get("updated_at")),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "type": self.type,
                "status": self.status.value,
                "priority": self.priority,
                "title": self.title,
                "intent": self.intent,
                "description": self.description,
                "meta": self.meta.to_dict(),
                "created_at": _format_datetime(self.created_at),
                "updated_at": _format_datetime(self.updated_at),
            },
        )
        return payload

    @property
    def is_eligible(self) -> bool:
        return self.status in ELIGIBLE_STATUSES

    def sort_key(self) -> tuple[bool, int, str]:
        """Ascending priority, missing priority last, id as tie-breaker."""

        return (self.priority is None, self.priority or 0, self.id)


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of executing one bead."""

    bead_id: str
    outcome: ExecutionOutcome
    status: BeadStatus | None
    exit_code: int | None = None
    detail: str | None = None


@dataclass(slots=True)
class CycleSummary:
    """Counters for one daemon poll cycle."""

    reset_stuck: int = 0
    eligible: int = 0
    dispatched: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    blocked: int = 0
    timeouts: int = 0
    errors: int = 0

    def record(self, result: ExecutionResult) -> None:
        self.dispatched += 1
        if result.outcome == ExecutionOutcome.COMPLETED:
            self.completed += 1
        elif result.outcome == ExecutionOutcome.RETRY:
            self.retried += 1
        elif result.outcome == ExecutionOutcome.FAILED:
            self.failed += 1
        elif result.outcome == ExecutionOutcome.BLOCKED:
            self.blocked += 1
        elif result.outcome == ExecutionOutcome.TIMED_OUT:
            self.timeouts += 1
        else:
            self.errors += 1


@dataclass(slots=True)
class DaemonRunSummary:
    """Aggregate daemon counters for CLI reporting."""

    cycles: int = 0
    failed_cycles: int = 0
    restarts: int = 0
    dispatched: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    blocked: int = 0
    timeouts: int = 0
    reset_stuck: int = 0

    def add_cycle(self, cycle: CycleSummary) -> None:
        self.cycles += 1
        self.dispatched += cycle.dispatched
        self.completed += cycle.completed
        self.retried += cycle.retried
        self.failed += cycle.failed
        self.blocked += cycle.blocked
        self.timeouts += cycle.timeouts
        self.reset_stuck += cycle.reset_stuck


def _coerce_status(value: object) -> tuple[BeadStatus, str | None]:
    if not isinstance(value, str) or not value.strip():
        return BeadStatus.PENDING, None
    normalized = value.strip().lower()
    try:
        return BeadStatus(normalized), None
    except ValueError:
        pass
    alias = _STATUS_ALIASES.get(normalized)
    if alias is not None:
        return alias, None
    return BeadStatus.BLOCKED, value


def _coerce_priority(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _coerce_count(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float) and value.is_integer():
        return max(int(value), 0)
    if isinstance(value, str):
        try:
            return max(int(value.strip()), 0)
        except ValueError:
            return 0
    return 0


def _coerce_text(value: object) -> str:
    return value if isinstance(value, str) else ""


def _coerce_optional_text(value: object) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _coerce_datetime(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return from_iso(value.strip())
    except ValueError:
        return None


def _format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
