"""Batch scheduler: the orchestration spine of a run.

The change-set is cut into consecutive batches that run strictly one after
another. Inside a batch a bounded pool of workers applies entries
concurrently, never more than the failures still needed to breach the
threshold; the batch is then verified and, if its failure fraction
meets the threshold, rolled back and the run halts. Between batches the
pacing policy may delay or shrink the next batch. Batch size never grows
back within a run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from .endpoint import PerformanceSample, PerformanceSignal
from .executor import MutationExecutor
from .pacing import PacingAction, PacingDecision, PacingPolicy
from .records import (
    UNRESOLVED_REASONS,
    Batch,
    ChangeSetEntry,
    EntryReason,
    EntryStatus,
    RunResult,
)
from .rollback import RollbackCoordinator
from .verifier import ReconciliationVerifier

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 0.2
DEFAULT_CONCURRENCY_CAP = 10

HALT_REASON_THRESHOLD = "batch_failure_threshold"

# Tolerance for failure fractions such as 1/10 against 0.1
_THRESHOLD_EPSILON = 1e-9


class BatchScheduler:
    """Sequences batches of a change-set through apply, verify and rollback."""

    def __init__(
        self,
        executor: MutationExecutor,
        verifier: ReconciliationVerifier,
        rollback: RollbackCoordinator,
        *,
        failure_threshold: float = DEFAULT_FAILURE_THRESHOLD,
        concurrency_cap: int = DEFAULT_CONCURRENCY_CAP,
        performance_signal: PerformanceSignal | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        if not 0.0 < failure_threshold <= 1.0:
            raise ValueError("failure_threshold must be in (0, 1]")
        if concurrency_cap < 1:
            raise ValueError("concurrency_cap must be at least 1")

        self._executor = executor
        self._verifier = verifier
        self._rollback = rollback
        self._failure_threshold = failure_threshold
        self._concurrency_cap = concurrency_cap
        self._signal = performance_signal
        self._cancel_event = cancel_event or asyncio.Event()

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    def cancel(self) -> None:
        """Request a clean stop after in-flight mutations finish."""
        logger.info("Cancellation requested")
        self._cancel_event.set()

    def _cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _breaches(self, failures: int, size: int) -> bool:
        if size == 0 or failures == 0:
            return False
        return failures / size + _THRESHOLD_EPSILON >= self._failure_threshold

    async def run(
        self,
        change_set: Sequence[ChangeSetEntry],
        batch_size: int,
        pacing_policy: PacingPolicy,
        result: RunResult | None = None,
    ) -> RunResult:
        """Execute the change-set in batches.

        Args:
            change_set: Ordered entries from the differencer.
            batch_size: Initial (and maximum) batch size.
            pacing_policy: Inter-batch pacing decisions.
            result: Result to fill in; a new one is created if omitted.

        Returns:
            The RunResult, with every entry in a terminal status.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        result = result if result is not None else RunResult()
        queue: list[ChangeSetEntry] = []
        for entry in change_set:
            if entry.status == EntryStatus.SKIPPED:
                result.unbatched.append(entry)
            elif entry.status == EntryStatus.PENDING:
                queue.append(entry)
            else:
                raise ValueError(
                    f"Entry for '{entry.entity_id}' is {entry.status.value}, expected Pending"
                )

        current_size = batch_size
        position = 0

        logger.info(
            "Starting batched execution",
            extra={
                "entries": len(queue),
                "skipped": len(result.unbatched),
                "batch_size": batch_size,
                "failure_threshold": self._failure_threshold,
                "concurrency_cap": self._concurrency_cap,
            },
        )

        while position < len(queue):
            if self._cancelled():
                result.cancelled = True
                self._skip(queue[position:], EntryReason.CANCELLED, result)
                break

            batch = Batch(index=len(result.batches), entries=queue[position : position + current_size])
            position += batch.size
            result.batches.append(batch)

            breached = await self._run_batch(batch)
            result.unresolved.extend(
                entry.entity_id
                for entry in batch.entries
                if entry.reason in UNRESOLVED_REASONS
            )
            batch.complete()

            if batch.cancelled:
                result.cancelled = True

            if breached:
                result.halted = True
                result.halt_reason = HALT_REASON_THRESHOLD
                self._skip(queue[position:], EntryReason.RUN_HALTED, result)
                logger.error(
                    "Batch breached failure threshold, halting run",
                    extra={
                        "batch_index": batch.index,
                        "failure_fraction": round(batch.failure_fraction, 3),
                        "failure_threshold": self._failure_threshold,
                        "remaining": len(queue) - position,
                    },
                )
                break

            if batch.cancelled:
                self._skip(queue[position:], EntryReason.CANCELLED, result)
                break

            if position < len(queue):
                decision = await self._pace(current_size, pacing_policy)
                current_size = min(current_size, decision.next_batch_size)

        logger.info(
            "Batched execution finished",
            extra={
                "batches": len(result.batches),
                "summary": result.summary(),
                "halted": result.halted,
                "cancelled": result.cancelled,
            },
        )
        return result

    def _failure_budget(self, size: int) -> int:
        """Fewest failures that breach the threshold in a batch of this size."""
        return next(f for f in range(1, size + 1) if self._breaches(f, size))

    async def _run_batch(self, batch: Batch) -> bool:
        """Apply, verify and (on breach) roll back one batch.

        A new entry is dispatched only while the failures so far plus the
        writes in flight stay below the breaching count. So once the
        threshold is reached, no later entry of the batch has started.

        Returns:
            True if the batch breached the failure threshold.
        """
        batch.start()
        pool_size = min(batch.size, self._concurrency_cap)
        budget = self._failure_budget(batch.size)
        slots = asyncio.Condition()
        failures = 0
        in_flight = 0
        halted = False
        tasks: list[asyncio.Task[ChangeSetEntry]] = []

        logger.info(
            "Starting batch",
            extra={
                "batch_index": batch.index,
                "size": batch.size,
                "workers": min(pool_size, budget),
            },
        )

        def can_dispatch() -> bool:
            return halted or (in_flight < pool_size and failures + in_flight < budget)

        async def worker(entry: ChangeSetEntry) -> ChangeSetEntry:
            nonlocal failures, in_flight, halted
            try:
                await self._executor.apply(entry)
                if entry.status == EntryStatus.FAILED:
                    failures += 1
                    if self._breaches(failures, batch.size):
                        halted = True
                return entry
            finally:
                async with slots:
                    in_flight -= 1
                    slots.notify_all()

        for entry in batch.entries:
            async with slots:
                await slots.wait_for(can_dispatch)
                if self._cancelled():
                    batch.cancelled = True
                    break
                if halted:
                    break
                in_flight += 1
            tasks.append(asyncio.create_task(worker(entry)))

        if tasks:
            await asyncio.gather(*tasks)

        undispatched_reason = EntryReason.CANCELLED if batch.cancelled else EntryReason.BATCH_HALTED
        for entry in batch.entries:
            if entry.status == EntryStatus.PENDING:
                entry.transition(EntryStatus.SKIPPED, reason=undispatched_reason)

        batch.entries = sorted(batch.entries, key=lambda e: e.index)

        await self._verifier.verify(batch)

        breached = self._breaches(batch.count(EntryStatus.FAILED), batch.size)
        if breached:
            batch.breached = True
            await self._rollback.rollback(batch)

        logger.info(
            "Batch finished",
            extra={
                "batch_index": batch.index,
                "verified": batch.count(EntryStatus.VERIFIED),
                "failed": batch.count(EntryStatus.FAILED),
                "rolled_back": batch.count(EntryStatus.ROLLED_BACK),
                "skipped": batch.count(EntryStatus.SKIPPED),
                "breached": breached,
                "cancelled": batch.cancelled,
            },
        )
        return breached

    async def _pace(self, current_size: int, pacing_policy: PacingPolicy) -> PacingDecision:
        sample = await self._sample()
        decision = pacing_policy.decide(
            current_size,
            self._executor.error_counter.error_rate_percent(),
            sample,
        )

        extra = {
            "action": decision.action.value,
            "current_batch_size": current_size,
            "next_batch_size": decision.next_batch_size,
            "error_rate_percent": round(decision.error_rate_percent, 2),
            "latency_ms": round(decision.latency_ms, 1),
        }

        match decision.action:
            case PacingAction.SHRINK:
                logger.warning("Pacing: shrinking next batch", extra=extra)
            case PacingAction.DELAY:
                logger.warning(
                    "Pacing: delaying next batch",
                    extra={**extra, "delay_seconds": decision.delay_seconds},
                )
                # Cancellation cuts the wait short
                try:
                    await asyncio.wait_for(
                        self._cancel_event.wait(),
                        timeout=decision.delay_seconds,
                    )
                except TimeoutError:
                    pass
            case PacingAction.PROCEED:
                logger.debug("Pacing: proceeding", extra=extra)

        return decision

    async def _sample(self) -> PerformanceSample | None:
        if self._signal is None:
            return None
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._signal.sample)
        except Exception as e:
            logger.warning(
                "Performance signal unavailable, pacing on error rate only",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            return None

    @staticmethod
    def _skip(
        entries: Sequence[ChangeSetEntry],
        reason: EntryReason,
        result: RunResult,
    ) -> None:
        for entry in entries:
            entry.transition(EntryStatus.SKIPPED, reason=reason)
            result.unbatched.append(entry)
