"""Run provenance for audit.

Every reconciliation run is stamped with a provenance record that answers:
- "What did this run change, and on which vCenter?"
- "Which policy and which reconciler version drove it?"
- "Did anything get left behind in a mutated state?"

The record is written to the structured log, one per run, plus one log
line per entity change so individual mutations can be traced.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .records import ChangeSetEntry, RunResult

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
RECONCILER_VERSION = os.environ.get("FLEET_RECONCILER_VERSION", "dev")


@dataclass
class OutcomeCounts:
    """Per-status entry counts of a run."""

    verified: int = 0
    failed: int = 0
    rolled_back: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.verified + self.failed + self.rolled_back + self.skipped


@dataclass
class RunProvenance:
    """Provenance record for one reconciliation run."""

    # Timestamp
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    endpoint: str = ""
    reconciler_version: str = RECONCILER_VERSION
    instance_id: str = ""

    # Policy source
    git_commit_sha: str = ""
    policy_file: str = ""
    policy_hash: str = ""  # SHA256 of the policy file content

    # What was reconciled
    field_name: str = ""
    desired_value: str = ""
    dry_run: bool = False

    # Outcome
    total_considered: int = 0
    change_set_size: int = 0
    outcomes: OutcomeCounts = field(default_factory=OutcomeCounts)
    batches: int = 0
    halted: bool = False
    halt_reason: str | None = None
    cancelled: bool = False
    unresolved: list[str] = field(default_factory=list)

    # Timing
    duration_seconds: float = 0.0

    # Error tracking
    error: str | None = None
    error_type: str | None = None

    def record_result(self, result: RunResult) -> None:
        """Copy the outcome of a finished run into this record."""
        self.total_considered = result.total_considered
        self.change_set_size = result.change_set_size
        self.outcomes = OutcomeCounts(
            verified=result.total_changed,
            failed=result.total_failed,
            rolled_back=result.total_rolled_back,
            skipped=result.total_skipped,
        )
        self.batches = len(result.batches)
        self.halted = result.halted
        self.halt_reason = result.halt_reason
        self.cancelled = result.cancelled
        self.unresolved = list(result.unresolved)
        self.duration_seconds = result.duration_seconds
        self.error = result.error
        self.error_type = result.error_type

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


def hash_policy_file(path: Path | None) -> str:
    """SHA256 of the policy file, or an empty string if it cannot be read."""
    if path is None:
        return ""
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        return ""


class ProvenanceLogger:
    """Logs provenance records to the structured log."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._instance_id = os.environ.get("HOSTNAME", "")

    def create_provenance(
        self,
        endpoint: str,
        field_name: str,
        desired_value: str,
        dry_run: bool = False,
        policy_file: Path | None = None,
    ) -> RunProvenance:
        """Create a new provenance record for a run.

        Args:
            endpoint: Name of the management endpoint (vCenter host).
            field_name: Field being reconciled.
            desired_value: Target value of the field.
            dry_run: Whether the run only plans.
            policy_file: Policy the run was loaded from, if any.

        Returns:
            Initialized provenance record.
        """
        return RunProvenance(
            endpoint=endpoint,
            reconciler_version=RECONCILER_VERSION,
            instance_id=self._instance_id,
            git_commit_sha=self._git_commit_sha,
            policy_file=str(policy_file) if policy_file else "",
            policy_hash=hash_policy_file(policy_file),
            field_name=field_name,
            desired_value=desired_value,
            dry_run=dry_run,
        )

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Log a completed provenance record.

        This is the primary audit log for the run.

        Args:
            provenance: Completed provenance record.
        """
        log_level = logging.INFO
        if provenance.error or provenance.unresolved:
            log_level = logging.ERROR
        elif provenance.halted or provenance.outcomes.failed > 0:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Reconciliation provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "endpoint": provenance.endpoint,
                "field_name": provenance.field_name,
                "desired_value": provenance.desired_value,
                "verified": provenance.outcomes.verified,
                "failed": provenance.outcomes.failed,
                "rolled_back": provenance.outcomes.rolled_back,
                "halted": provenance.halted,
                "git_commit": provenance.git_commit_sha,
                "reconciler_version": provenance.reconciler_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )

    def log_change_detail(self, provenance: RunProvenance, entry: ChangeSetEntry) -> None:
        """Log the outcome of one entity change for fine-grained audit."""
        logger.info(
            "Entity change",
            extra={
                "endpoint": provenance.endpoint,
                "git_commit": provenance.git_commit_sha,
                "entity_id": entry.entity_id,
                "entity_name": entry.entity.name,
                "from_value": entry.from_value,
                "to_value": entry.to_value,
                "status": entry.status.value,
                "reason": entry.reason.value if entry.reason else None,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
