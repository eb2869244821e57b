"""Desired-state differencer.

Turns a snapshot into an ordered change-set. Pure and deterministic:
entries are sorted by entity id so repeated dry runs produce identical,
diffable plans.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence

from .records import ChangeSetEntry, EntityRecord, EntryReason, EntryStatus, PowerState

logger = logging.getLogger(__name__)

MutablePredicate = Callable[[EntityRecord], bool]


def always_mutable(_record: EntityRecord) -> bool:
    """Predicate for fields that can be changed in any power state."""
    return True


def power_state_predicate(states: Iterable[PowerState]) -> MutablePredicate:
    """Build a predicate allowing mutation only in the given power states."""
    allowed = frozenset(states)

    def predicate(record: EntityRecord) -> bool:
        return record.power_state in allowed

    return predicate


def diff(
    records: Sequence[EntityRecord],
    desired: str,
    mutable_predicate: MutablePredicate = always_mutable,
) -> list[ChangeSetEntry]:
    """Compute the change-set for a snapshot.

    Entities already at the desired value are left out entirely. Entities
    the predicate rejects are included as Skipped so they show up in the
    report without ever being attempted. Degraded records (unknown current
    value) never equal the desired value and are always included.

    Args:
        records: Snapshot from the collector.
        desired: Target value of the field.
        mutable_predicate: Whether an entity may be changed right now.

    Returns:
        Entries ordered by entity id, with index set to that position.
    """
    entries: list[ChangeSetEntry] = []
    for record in sorted(records, key=lambda r: r.id):
        if record.current_value == desired:
            continue
        entry = ChangeSetEntry(
            entity=record,
            from_value=record.current_value,
            to_value=desired,
            index=len(entries),
        )
        if not mutable_predicate(record):
            entry.transition(EntryStatus.SKIPPED, reason=EntryReason.NOT_MUTABLE)
        entries.append(entry)

    skipped = sum(1 for entry in entries if entry.status == EntryStatus.SKIPPED)
    logger.info(
        "Computed change-set",
        extra={
            "considered": len(records),
            "changes": len(entries) - skipped,
            "not_mutable": skipped,
            "desired_value": desired,
        },
    )
    return entries
