"""Entity snapshot collector.

Reads the current value of the reconciled field for every entity in scope.
A failed read of one entity degrades that record instead of aborting the
collection. Connectivity and authorization failures abort it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from .endpoint import ManagementEndpoint, RawEntity, ScopeFilter
from .errors import is_fatal_collection_error
from .records import EntityRecord

logger = logging.getLogger(__name__)

DEFAULT_READ_CONCURRENCY = 10


@dataclass
class CollectionResult:
    """Snapshot of the entities in scope."""

    records: list[EntityRecord] = field(default_factory=list)
    degraded_count: int = 0
    listed_count: int = 0
    duplicate_count: int = 0
    duration_seconds: float = 0.0


class SnapshotCollector:
    """Builds EntityRecords from a management endpoint."""

    def __init__(
        self,
        endpoint: ManagementEndpoint,
        field_name: str,
        desired_value: str,
        read_concurrency: int = DEFAULT_READ_CONCURRENCY,
    ) -> None:
        self._endpoint = endpoint
        self._field_name = field_name
        self._desired_value = desired_value
        self._read_concurrency = max(1, read_concurrency)

    async def collect(self, scope: ScopeFilter) -> CollectionResult:
        """Collect a snapshot of every entity in scope.

        Args:
            scope: Entity selection.

        Returns:
            CollectionResult with one record per unique entity id.

        Raises:
            ConnectivityError: If the endpoint is unreachable.
            AuthorizationError: If the session is rejected.
        """
        start = time.monotonic()
        loop = asyncio.get_running_loop()

        raw_entities: list[RawEntity] = await loop.run_in_executor(
            None, self._endpoint.list_entities, scope
        )

        result = CollectionResult(listed_count=len(raw_entities))
        seen: set[str] = set()
        selected: list[RawEntity] = []
        for raw in raw_entities:
            if raw.id in seen:
                result.duplicate_count += 1
                logger.warning(
                    "Duplicate entity id from endpoint, keeping first",
                    extra={"endpoint": self._endpoint.name, "entity_id": raw.id},
                )
                continue
            seen.add(raw.id)
            if scope.matches(raw.name or raw.id):
                selected.append(raw)

        semaphore = asyncio.Semaphore(self._read_concurrency)

        async def read(raw: RawEntity) -> EntityRecord:
            async with semaphore:
                return await self._read_record(raw)

        tasks = [asyncio.create_task(read(raw)) for raw in selected]
        try:
            result.records = list(await asyncio.gather(*tasks))
        except BaseException:
            # Stop sibling reads once the collection is abandoned
            for task in tasks:
                task.cancel()
            raise
        result.degraded_count = sum(1 for record in result.records if record.degraded)
        result.duration_seconds = time.monotonic() - start

        logger.info(
            "Collected entity snapshot",
            extra={
                "endpoint": self._endpoint.name,
                "listed": result.listed_count,
                "in_scope": len(result.records),
                "degraded": result.degraded_count,
                "duration_seconds": round(result.duration_seconds, 3),
            },
        )
        return result

    async def _read_record(self, raw: RawEntity) -> EntityRecord:
        loop = asyncio.get_running_loop()
        record = EntityRecord(
            id=raw.id,
            name=raw.name,
            current_value=None,
            desired_value=self._desired_value,
            power_state=raw.power_state,
        )
        try:
            value = await loop.run_in_executor(
                None, self._endpoint.read_field, raw.id, self._field_name
            )
        except Exception as e:
            if is_fatal_collection_error(e):
                raise
            record.degraded = True
            logger.warning(
                "Failed to read entity field, recording as unknown",
                extra={
                    "endpoint": self._endpoint.name,
                    "entity_id": raw.id,
                    "field_name": self._field_name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return record

        record.observe(value)
        return record
