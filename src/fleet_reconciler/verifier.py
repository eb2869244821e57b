"""Reconciliation verifier.

Re-reads every Applied entry after the batch has drained and promotes it
to Verified only when the endpoint reports the written value. A write that
appeared to succeed but did not stick is a failure with its own reason
code, distinct from write-time failures.
"""

from __future__ import annotations

import asyncio
import logging

from .errors import TerminalWriteError, TransientWriteError, VerificationMismatch
from .executor import MutationExecutor
from .records import Batch, ChangeSetEntry, EntryReason, EntryStatus

logger = logging.getLogger(__name__)


class ReconciliationVerifier:
    """Confirms that applied entries converged to the desired value."""

    def __init__(self, executor: MutationExecutor, concurrency: int = 10) -> None:
        self._executor = executor
        self._concurrency = max(1, concurrency)

    async def verify(self, batch: Batch) -> Batch:
        """Verify every Applied entry of the batch in place."""
        applied = batch.with_status(EntryStatus.APPLIED)
        if not applied:
            return batch

        semaphore = asyncio.Semaphore(self._concurrency)

        async def check(entry: ChangeSetEntry) -> None:
            async with semaphore:
                await self._verify_entry(entry)

        await asyncio.gather(*(check(entry) for entry in applied))

        logger.info(
            "Verified batch",
            extra={
                "batch_index": batch.index,
                "checked": len(applied),
                "verified": batch.count(EntryStatus.VERIFIED),
                "failed": batch.count(EntryStatus.FAILED),
            },
        )
        return batch

    async def _verify_entry(self, entry: ChangeSetEntry) -> None:
        try:
            observed = await self._executor.read(entry.entity_id)
        except (TransientWriteError, TerminalWriteError) as e:
            entry.transition(
                EntryStatus.FAILED,
                reason=EntryReason.VERIFICATION_READ_FAILED,
                error=str(e),
            )
            logger.error(
                "Verification read failed",
                extra={"entity_id": entry.entity_id, "error": str(e)},
            )
            return

        entry.entity.observe(observed)
        if observed == entry.to_value:
            entry.transition(EntryStatus.VERIFIED)
            return

        mismatch = VerificationMismatch(entry.entity_id, entry.to_value, observed)
        entry.transition(
            EntryStatus.FAILED,
            reason=EntryReason.VERIFICATION_MISMATCH,
            error=str(mismatch),
        )
        logger.error(
            "Verification mismatch",
            extra={
                "entity_id": entry.entity_id,
                "expected": entry.to_value,
                "observed": observed,
            },
        )
