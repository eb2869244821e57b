"""Mutation executor with per-operation retry.

apply() never raises: every outcome ends up in the entry's status. The
same retrying call path is used for verification reads and rollback
writes so all endpoint traffic follows one backoff policy.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from .endpoint import ManagementEndpoint
from .errors import (
    TerminalWriteError,
    TransientWriteError,
    UnconfirmedWriteError,
    classify_write_error,
)
from .pacing import ErrorRateCounter
from .records import ChangeSetEntry, EntryReason, EntryStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_JITTER_RATIO = 0.2
DEFAULT_CALL_TIMEOUT_SECONDS = 120.0


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with symmetric jitter."""

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    factor: float = DEFAULT_BACKOFF_FACTOR
    jitter_ratio: float = DEFAULT_JITTER_RATIO

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds cannot be negative")
        if not 0.0 <= self.jitter_ratio < 1.0:
            raise ValueError("jitter_ratio must be in [0, 1)")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff_seconds(self, retry: int) -> float:
        """Delay before the given retry (1-based)."""
        backoff = self.base_delay_seconds * (self.factor ** (retry - 1))
        jitter = random.uniform(-self.jitter_ratio, self.jitter_ratio)
        return max(0.0, backoff * (1.0 + jitter))


class MutationExecutor:
    """Applies change-set entries through a management endpoint."""

    def __init__(
        self,
        endpoint: ManagementEndpoint,
        field_name: str,
        retry_policy: RetryPolicy | None = None,
        error_counter: ErrorRateCounter | None = None,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self._endpoint = endpoint
        self._field_name = field_name
        self._retry = retry_policy or RetryPolicy()
        self._counter = error_counter or ErrorRateCounter()
        self._call_timeout = call_timeout_seconds

    @property
    def endpoint(self) -> ManagementEndpoint:
        return self._endpoint

    @property
    def field_name(self) -> str:
        return self._field_name

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    @property
    def error_counter(self) -> ErrorRateCounter:
        return self._counter

    async def call_with_retry(
        self,
        func: Callable[..., T],
        *args: Any,
        operation: str,
        entity_id: str,
        retry_timeouts: bool = True,
    ) -> tuple[T, int]:
        """Run a blocking endpoint call, retrying transient failures.

        A call that exceeds the timeout keeps running in its worker thread.
        That is harmless for reads, but a timed-out write may still land,
        so writes pass retry_timeouts=False.

        Args:
            func: Blocking endpoint method.
            *args: Arguments for func.
            operation: Name used in logs.
            entity_id: Entity the call is about, for logs.
            retry_timeouts: Retry calls that exceed the timeout.

        Returns:
            Tuple of (result, attempts used).

        Raises:
            TransientWriteError: If every attempt failed transiently.
            TerminalWriteError: On the first terminal failure.
            UnconfirmedWriteError: On a timeout when retry_timeouts is False.
        """
        loop = asyncio.get_running_loop()
        last_error: TransientWriteError | None = None

        for attempt in range(1, self._retry.max_attempts + 1):
            started = time.monotonic()
            future = loop.run_in_executor(None, func, *args)
            try:
                result = await asyncio.wait_for(future, timeout=self._call_timeout)
            except Exception as e:
                self._counter.record(False, time.monotonic() - started)
                # wait_for cancels the future on timeout; the thread is not stopped
                if future.cancelled() and not retry_timeouts:
                    unconfirmed = UnconfirmedWriteError(
                        f"{operation} did not finish within {self._call_timeout}s",
                        cause=e,
                    )
                    unconfirmed.attempts = attempt
                    raise unconfirmed from e

                classified = classify_write_error(e)
                classified.attempts = attempt
                if isinstance(classified, TerminalWriteError):
                    raise classified from e

                last_error = classified
                if attempt < self._retry.max_attempts:
                    wait_time = self._retry.backoff_seconds(attempt)
                    logger.warning(
                        f"{operation} failed transiently, retrying",
                        extra={
                            "entity_id": entity_id,
                            "attempt": attempt,
                            "max_attempts": self._retry.max_attempts,
                            "wait_seconds": round(wait_time, 3),
                            "error": str(e),
                        },
                    )
                    await asyncio.sleep(wait_time)
                continue

            self._counter.record(True, time.monotonic() - started)
            return result, attempt

        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error

    async def write(self, entity_id: str, value: str) -> int:
        """Write the field with retry. Returns the attempts used.

        A write that times out is never re-sent. The field is read back
        instead; if it already holds value the write counts as done.

        Raises:
            UnconfirmedWriteError: If a timed-out write cannot be confirmed.
        """
        try:
            _, attempts = await self.call_with_retry(
                self._endpoint.write_field,
                entity_id,
                self._field_name,
                value,
                operation="Write",
                entity_id=entity_id,
                retry_timeouts=False,
            )
        except UnconfirmedWriteError as e:
            if not await self._holds(entity_id, value):
                raise
            logger.warning(
                "Write timed out but the value is in place",
                extra={"entity_id": entity_id, "value": value, "attempts": e.attempts},
            )
            return e.attempts
        return attempts

    async def read(self, entity_id: str) -> str | None:
        """Read the field with retry."""
        value, _ = await self.call_with_retry(
            self._endpoint.read_field,
            entity_id,
            self._field_name,
            operation="Read",
            entity_id=entity_id,
        )
        return value

    async def _holds(self, entity_id: str, value: str) -> bool:
        try:
            return await self.read(entity_id) == value
        except (TransientWriteError, TerminalWriteError) as e:
            logger.warning(
                "Could not read back timed-out write",
                extra={"entity_id": entity_id, "error": str(e)},
            )
            return False

    async def apply(self, entry: ChangeSetEntry) -> ChangeSetEntry:
        """Apply one entry. Never raises; the outcome is the entry status."""
        if entry.status != EntryStatus.PENDING:
            logger.warning(
                "Entry is not pending, not applying",
                extra={"entity_id": entry.entity_id, "status": entry.status.value},
            )
            return entry

        started = time.monotonic()
        try:
            entry.attempts = await self.write(entry.entity_id, entry.to_value)
        except UnconfirmedWriteError as e:
            entry.attempts = e.attempts
            entry.duration_seconds = time.monotonic() - started
            entry.transition(
                EntryStatus.FAILED,
                reason=EntryReason.WRITE_UNCONFIRMED,
                error=str(e),
            )
            logger.error(
                "Write timed out and could not be confirmed, entity may still change",
                extra={"entity_id": entry.entity_id, "to_value": entry.to_value},
            )
            return entry
        except TerminalWriteError as e:
            entry.attempts = e.attempts
            entry.duration_seconds = time.monotonic() - started
            entry.transition(EntryStatus.FAILED, reason=EntryReason.WRITE_TERMINAL, error=str(e))
            logger.error(
                "Write failed (terminal)",
                extra={"entity_id": entry.entity_id, "error": str(e)},
            )
            return entry
        except TransientWriteError as e:
            entry.attempts = e.attempts
            entry.duration_seconds = time.monotonic() - started
            entry.transition(
                EntryStatus.FAILED,
                reason=EntryReason.WRITE_TRANSIENT_EXHAUSTED,
                error=str(e),
            )
            logger.error(
                "Write failed after retries",
                extra={
                    "entity_id": entry.entity_id,
                    "attempts": entry.attempts,
                    "error": str(e),
                },
            )
            return entry
        except Exception as e:
            entry.duration_seconds = time.monotonic() - started
            entry.transition(EntryStatus.FAILED, reason=EntryReason.WRITE_TERMINAL, error=str(e))
            logger.exception(
                "Unexpected error applying entry",
                extra={"entity_id": entry.entity_id, "error": str(e)},
            )
            return entry

        entry.duration_seconds = time.monotonic() - started
        entry.transition(EntryStatus.APPLIED)
        logger.info(
            "Applied change",
            extra={
                "entity_id": entry.entity_id,
                "from_value": entry.from_value,
                "to_value": entry.to_value,
                "attempts": entry.attempts,
                "duration_seconds": round(entry.duration_seconds, 3),
            },
        )
        return entry
