"""Runtime records for a reconciliation run.

EntityRecord, ChangeSetEntry, Batch and RunResult live only in memory for
the duration of one run. RunResult.to_dict() is the structured record
handed to downstream report renderers.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class PowerState(str, Enum):
    """Power state of a managed entity."""

    ON = "On"
    OFF = "Off"
    SUSPENDED = "Suspended"
    UNKNOWN = "Unknown"


class EntryStatus(str, Enum):
    """Lifecycle status of a change-set entry."""

    PENDING = "Pending"
    APPLIED = "Applied"
    VERIFIED = "Verified"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"
    SKIPPED = "Skipped"


class EntryReason(str, Enum):
    """Diagnostic reason codes attached to an entry."""

    NOT_MUTABLE = "not_mutable"
    CANCELLED = "cancelled"
    BATCH_HALTED = "batch_halted"
    RUN_HALTED = "run_halted"
    WRITE_TERMINAL = "write_terminal"
    WRITE_TRANSIENT_EXHAUSTED = "write_transient_exhausted"
    WRITE_UNCONFIRMED = "write_unconfirmed"
    VERIFICATION_MISMATCH = "verification_mismatch"
    VERIFICATION_READ_FAILED = "verification_read_failed"
    ROLLBACK_FAILED = "rollback_failed"


# Entity state is unknown or left mutated
UNRESOLVED_REASONS: frozenset[EntryReason] = frozenset(
    {EntryReason.WRITE_UNCONFIRMED, EntryReason.ROLLBACK_FAILED}
)

TERMINAL_STATUSES: frozenset[EntryStatus] = frozenset(
    {
        EntryStatus.VERIFIED,
        EntryStatus.FAILED,
        EntryStatus.SKIPPED,
        EntryStatus.ROLLED_BACK,
    }
)

# Forward-only, except the rollback path out of Applied/Verified
ALLOWED_TRANSITIONS: dict[EntryStatus, frozenset[EntryStatus]] = {
    EntryStatus.PENDING: frozenset(
        {EntryStatus.APPLIED, EntryStatus.FAILED, EntryStatus.SKIPPED}
    ),
    EntryStatus.APPLIED: frozenset(
        {EntryStatus.VERIFIED, EntryStatus.FAILED, EntryStatus.ROLLED_BACK}
    ),
    EntryStatus.VERIFIED: frozenset({EntryStatus.ROLLED_BACK}),
}


class InvalidTransitionError(Exception):
    """Raised when an entry is moved along an edge the lifecycle forbids."""

    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class EntityRecord:
    """Observed state of one managed entity.

    current_value is None when the field could not be read (degraded).
    """

    id: str
    current_value: str | None
    desired_value: str
    power_state: PowerState = PowerState.UNKNOWN
    name: str = ""
    last_observed_at: datetime = field(default_factory=_utcnow)
    degraded: bool = False

    def observe(self, value: str | None) -> None:
        """Record a fresh read of the field."""
        self.current_value = value
        self.last_observed_at = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "current_value": self.current_value,
            "desired_value": self.desired_value,
            "power_state": self.power_state.value,
            "last_observed_at": _iso(self.last_observed_at),
            "degraded": self.degraded,
        }


@dataclass
class ChangeSetEntry:
    """One planned mutation and its progress through the lifecycle."""

    entity: EntityRecord
    from_value: str | None
    to_value: str
    index: int = 0
    status: EntryStatus = EntryStatus.PENDING
    reason: EntryReason | None = None
    error: str | None = None
    attempts: int = 0
    duration_seconds: float = 0.0

    @property
    def entity_id(self) -> str:
        return self.entity.id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(
        self,
        status: EntryStatus,
        reason: EntryReason | None = None,
        error: str | None = None,
    ) -> None:
        """Move the entry to a new status.

        Raises:
            InvalidTransitionError: If the lifecycle does not allow the move.
        """
        allowed = ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise InvalidTransitionError(
                f"Entry for '{self.entity_id}' cannot move from "
                f"{self.status.value} to {status.value}"
            )
        self.status = status
        if reason is not None:
            self.reason = reason
        if error is not None:
            self.error = error

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity.to_dict(),
            "from_value": self.from_value,
            "to_value": self.to_value,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "error": self.error,
            "attempts": self.attempts,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class Batch:
    """A bounded group of entries executed together.

    The batch is frozen once complete() has been called.
    """

    index: int
    entries: list[ChangeSetEntry] | tuple[ChangeSetEntry, ...]
    started_at: datetime | None = None
    completed_at: datetime | None = None
    outcome_summary: dict[str, int] = field(default_factory=dict)
    breached: bool = False
    cancelled: bool = False

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "completed_at", None) is not None:
            raise AttributeError(f"Batch {self.index} is complete and cannot be modified")
        super().__setattr__(name, value)

    @property
    def size(self) -> int:
        return len(self.entries)

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    def count(self, status: EntryStatus) -> int:
        return sum(1 for entry in self.entries if entry.status == status)

    def with_status(self, *statuses: EntryStatus) -> list[ChangeSetEntry]:
        return [entry for entry in self.entries if entry.status in statuses]

    @property
    def failure_fraction(self) -> float:
        if not self.entries:
            return 0.0
        return self.count(EntryStatus.FAILED) / len(self.entries)

    def start(self) -> None:
        self.started_at = _utcnow()

    def complete(self) -> None:
        """Summarize outcomes and freeze the batch."""
        self.outcome_summary = {
            status.value: self.count(status) for status in EntryStatus if self.count(status)
        }
        self.entries = tuple(self.entries)
        self.completed_at = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "size": self.size,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "outcome_summary": dict(self.outcome_summary),
            "breached": self.breached,
            "cancelled": self.cancelled,
            "entries": [entry.to_dict() for entry in self.entries],
        }


@dataclass
class RunResult:
    """Outcome of one reconciliation run against one endpoint.

    Totals are derived from the entries, so a run cut short still reports
    exactly how far it got.
    """

    endpoint: str = ""
    field_name: str = ""
    desired_value: str = ""
    total_considered: int = 0
    degraded_count: int = 0
    batches: list[Batch] = field(default_factory=list)
    # Entries skipped outside any batch (not mutable, or never reached)
    unbatched: list[ChangeSetEntry] = field(default_factory=list)
    # Dry-run plan, never executed
    planned: list[ChangeSetEntry] = field(default_factory=list)
    # Entity ids left in the mutated state after a failed rollback
    unresolved: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: datetime | None = None
    halted: bool = False
    halt_reason: str | None = None
    cancelled: bool = False
    dry_run: bool = False
    error: str | None = None
    error_type: str | None = None

    def entries(self) -> Iterator[ChangeSetEntry]:
        """Iterate over every executed or skipped entry of the run."""
        for batch in self.batches:
            yield from batch.entries
        yield from self.unbatched

    def _count(self, status: EntryStatus) -> int:
        return sum(1 for entry in self.entries() if entry.status == status)

    @property
    def total_changed(self) -> int:
        return self._count(EntryStatus.VERIFIED)

    @property
    def total_failed(self) -> int:
        return self._count(EntryStatus.FAILED)

    @property
    def total_rolled_back(self) -> int:
        return self._count(EntryStatus.ROLLED_BACK)

    @property
    def total_skipped(self) -> int:
        return self._count(EntryStatus.SKIPPED)

    @property
    def change_set_size(self) -> int:
        if self.dry_run:
            return len(self.planned)
        return sum(batch.size for batch in self.batches) + len(self.unbatched)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def success(self) -> bool:
        """True when the run finished without errors, halts, failures or leftovers."""
        return (
            self.error is None
            and not self.halted
            and self.total_failed == 0
            and not self.unresolved
        )

    def finalize(self) -> RunResult:
        if self.finished_at is None:
            self.finished_at = _utcnow()
        return self

    def summary(self) -> str:
        """One-line human summary of the outcome counts."""
        return (
            f"{self.total_changed} succeeded, {self.total_failed} failed, "
            f"{self.total_rolled_back} rolled back, {self.total_skipped} skipped"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable record."""
        return {
            "endpoint": self.endpoint,
            "field_name": self.field_name,
            "desired_value": self.desired_value,
            "total_considered": self.total_considered,
            "total_changed": self.total_changed,
            "total_failed": self.total_failed,
            "total_rolled_back": self.total_rolled_back,
            "total_skipped": self.total_skipped,
            "degraded_count": self.degraded_count,
            "batches": [batch.to_dict() for batch in self.batches],
            "unbatched": [entry.to_dict() for entry in self.unbatched],
            "planned": [entry.to_dict() for entry in self.planned],
            "unresolved": list(self.unresolved),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration_seconds": self.duration_seconds,
            "halted": self.halted,
            "halt_reason": self.halt_reason,
            "cancelled": self.cancelled,
            "dry_run": self.dry_run,
            "error": self.error,
            "error_type": self.error_type,
        }
