"""Reconciliation run facade.

One run against one management endpoint:
1. Collect a snapshot of every entity in scope
2. Diff it against the desired value into an ordered change-set
3. Execute the change-set in paced batches (apply, verify, roll back on breach)
4. Stamp the outcome with provenance and return the RunResult

A dry run stops after step 2 and returns the plan. Nothing is retained
between runs: a second run against a converged fleet finds an empty
change-set and mutates nothing.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from .collector import SnapshotCollector
from .config import RunOptions
from .differ import MutablePredicate, always_mutable, diff
from .endpoint import ManagementEndpoint, PerformanceSignal, ScopeFilter
from .errors import is_fatal_collection_error
from .executor import MutationExecutor, RetryPolicy
from .models import DEFAULT_FIELD_NAME
from .pacing import ErrorRateCounter, PacingPolicy
from .provenance import ProvenanceLogger, RunProvenance, get_provenance_logger
from .records import EntryStatus, RunResult
from .rollback import RollbackCoordinator
from .scheduler import BatchScheduler
from .verifier import ReconciliationVerifier

logger = logging.getLogger(__name__)

HALT_REASON_COLLECTION = "collection_failed"


class FleetReconciler:
    """Drives reconciliation runs against one management endpoint.

    The reconciler owns the cancel event shared by every component of a
    run. Setting it (shutdown(), or a signal handler in main) lets in-flight
    mutations finish, verifies them, and skips everything not yet started.
    """

    def __init__(
        self,
        endpoint: ManagementEndpoint,
        performance_signal: PerformanceSignal | None = None,
        cancel_event: asyncio.Event | None = None,
        provenance_logger: ProvenanceLogger | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._signal = performance_signal
        self._cancel_event = cancel_event or asyncio.Event()
        self._provenance = provenance_logger or get_provenance_logger()

    @property
    def endpoint(self) -> ManagementEndpoint:
        return self._endpoint

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    def shutdown(self) -> None:
        """Signal the current run to stop after in-flight mutations."""
        logger.info("Shutdown requested", extra={"endpoint": self._endpoint.name})
        self._cancel_event.set()

    async def execute(
        self,
        scope: ScopeFilter,
        desired_value: str,
        options: RunOptions | None = None,
        field_name: str = DEFAULT_FIELD_NAME,
        mutable_predicate: MutablePredicate = always_mutable,
        policy_file: Path | None = None,
    ) -> RunResult:
        """Run one reconciliation pass.

        Args:
            scope: Entities taking part in the run.
            desired_value: Target value of the field.
            options: Execution knobs; defaults apply if omitted.
            field_name: Field being reconciled.
            mutable_predicate: Whether an entity may be changed right now.
            policy_file: Policy the run came from, for provenance only.

        Returns:
            RunResult. Collection failures are reported in result.error
            rather than raised.
        """
        options = options or RunOptions()
        result = RunResult(
            endpoint=self._endpoint.name,
            field_name=field_name,
            desired_value=desired_value,
            dry_run=options.dry_run,
        )
        provenance = self._provenance.create_provenance(
            endpoint=self._endpoint.name,
            field_name=field_name,
            desired_value=desired_value,
            dry_run=options.dry_run,
            policy_file=policy_file,
        )

        logger.info(
            "Starting reconciliation run",
            extra={
                "endpoint": self._endpoint.name,
                "field_name": field_name,
                "desired_value": desired_value,
                "batch_size": options.batch_size,
                "failure_threshold": options.failure_threshold,
                "dry_run": options.dry_run,
            },
        )

        counter = ErrorRateCounter()
        executor = MutationExecutor(
            self._endpoint,
            field_name,
            retry_policy=RetryPolicy(
                max_retries=options.max_retries,
                base_delay_seconds=options.backoff_base_seconds,
            ),
            error_counter=counter,
            call_timeout_seconds=options.write_timeout_seconds,
        )
        collector = SnapshotCollector(
            self._endpoint,
            field_name,
            desired_value,
            read_concurrency=options.concurrency_cap,
        )

        try:
            snapshot = await collector.collect(scope)
        except Exception as e:
            result.error = str(e)
            result.error_type = type(e).__name__
            result.halted = True
            result.halt_reason = HALT_REASON_COLLECTION
            logger.error(
                "Snapshot collection failed, nothing was changed",
                extra={
                    "endpoint": self._endpoint.name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "fatal": is_fatal_collection_error(e),
                },
            )
            return self._finish(result, provenance)

        result.total_considered = len(snapshot.records)
        result.degraded_count = snapshot.degraded_count

        change_set = diff(snapshot.records, desired_value, mutable_predicate)

        if options.dry_run:
            result.planned = change_set
            logger.info(
                "Dry run: change-set computed, not applied",
                extra={
                    "endpoint": self._endpoint.name,
                    "planned": sum(1 for e in change_set if e.status == EntryStatus.PENDING),
                    "not_mutable": sum(1 for e in change_set if e.status == EntryStatus.SKIPPED),
                },
            )
            return self._finish(result, provenance)

        scheduler = BatchScheduler(
            executor,
            ReconciliationVerifier(executor, concurrency=options.concurrency_cap),
            RollbackCoordinator(executor),
            failure_threshold=options.failure_threshold,
            concurrency_cap=options.concurrency_cap,
            performance_signal=self._signal,
            cancel_event=self._cancel_event,
        )
        await scheduler.run(
            change_set,
            options.batch_size,
            PacingPolicy(options.pacing),
            result,
        )

        for entry in result.entries():
            if entry.status != EntryStatus.SKIPPED:
                self._provenance.log_change_detail(provenance, entry)

        return self._finish(result, provenance)

    def _finish(self, result: RunResult, provenance: RunProvenance) -> RunResult:
        result.finalize()
        provenance.record_result(result)
        self._provenance.log_provenance(provenance)
        self._log_result(result)
        return result

    def _log_result(self, result: RunResult) -> None:
        """Log run result with structured data."""
        extra: dict[str, Any] = {
            "endpoint": result.endpoint,
            "summary": result.summary(),
            "total_considered": result.total_considered,
            "change_set_size": result.change_set_size,
            "degraded": result.degraded_count,
            "batches": len(result.batches),
            "duration_seconds": result.duration_seconds,
            "dry_run": result.dry_run,
        }

        if result.error is not None:
            extra["error"] = result.error
            logger.error("Reconciliation run failed", extra=extra)
        elif result.unresolved:
            extra["unresolved"] = list(result.unresolved)
            logger.error("Reconciliation run left entities unresolved", extra=extra)
        elif result.halted:
            extra["halt_reason"] = result.halt_reason
            logger.warning("Reconciliation run halted", extra=extra)
        elif result.cancelled:
            logger.warning("Reconciliation run cancelled", extra=extra)
        else:
            logger.info("Reconciliation run result", extra=extra)
