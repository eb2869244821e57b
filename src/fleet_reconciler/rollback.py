"""Rollback coordinator.

Best-effort: every Applied or Verified entry of a failed batch gets a
rollback attempt, whatever happened to the others. A rollback counts only
once the prior value reads back. Entries whose rollback fails keep their
status and are marked ROLLBACK_FAILED.
"""

from __future__ import annotations

import logging

from .errors import TerminalWriteError, TransientWriteError, VerificationMismatch
from .executor import MutationExecutor
from .records import Batch, ChangeSetEntry, EntryReason, EntryStatus

logger = logging.getLogger(__name__)


class RollbackCoordinator:
    """Reverts mutated entries of a batch to their pre-change values."""

    def __init__(self, executor: MutationExecutor) -> None:
        self._executor = executor

    async def rollback(self, batch: Batch) -> Batch:
        """Roll back the batch in place. Never raises."""
        targets = batch.with_status(EntryStatus.APPLIED, EntryStatus.VERIFIED)
        logger.warning(
            "Rolling back batch",
            extra={"batch_index": batch.index, "entries": len(targets)},
        )

        # One rollback write in flight at a time
        for entry in targets:
            await self._rollback_entry(entry)

        logger.warning(
            "Rollback finished",
            extra={
                "batch_index": batch.index,
                "rolled_back": batch.count(EntryStatus.ROLLED_BACK),
                "unresolved": [
                    e.entity_id for e in targets if e.status != EntryStatus.ROLLED_BACK
                ],
            },
        )
        return batch

    async def _rollback_entry(self, entry: ChangeSetEntry) -> None:
        if entry.from_value is None:
            self._mark_unresolved(entry, "prior value unknown, nothing to restore")
            return

        try:
            await self._executor.write(entry.entity_id, entry.from_value)
            observed = await self._executor.read(entry.entity_id)
        except (TransientWriteError, TerminalWriteError) as e:
            self._mark_unresolved(entry, str(e))
            return
        except Exception as e:
            logger.exception("Unexpected error during rollback", extra={"entity_id": entry.entity_id})
            self._mark_unresolved(entry, str(e))
            return

        entry.entity.observe(observed)
        if observed != entry.from_value:
            mismatch = VerificationMismatch(entry.entity_id, entry.from_value, observed)
            self._mark_unresolved(entry, str(mismatch))
            return

        entry.transition(EntryStatus.ROLLED_BACK)
        logger.info(
            "Rolled back change",
            extra={"entity_id": entry.entity_id, "restored_value": entry.from_value},
        )

    @staticmethod
    def _mark_unresolved(entry: ChangeSetEntry, error: str) -> None:
        entry.reason = EntryReason.ROLLBACK_FAILED
        entry.error = error
        logger.error(
            "Rollback failed, entity left in mutated state",
            extra={
                "entity_id": entry.entity_id,
                "status": entry.status.value,
                "error": error,
            },
        )
