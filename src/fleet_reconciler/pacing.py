"""Inter-batch pacing.

The pacing policy looks at the rolling error rate of recent endpoint calls
and at an optional live performance sample, and decides between batches
whether to go on, wait, or shrink the next batch. Batch size only ever
shrinks within a run.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum

from .endpoint import PerformanceSample

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 50
DEFAULT_MIN_BATCH_SIZE = 5
DEFAULT_SHRINK_FACTOR = 0.5
DEFAULT_DELAY_SECONDS = 30.0


class ErrorRateCounter:
    """Rolling success/failure window shared by all workers of a run."""

    def __init__(self, window_size: int = DEFAULT_WINDOW_SIZE) -> None:
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        self._outcomes: deque[bool] = deque(maxlen=window_size)
        self._durations: deque[float] = deque(maxlen=window_size)
        self._lock = threading.Lock()

    def record(self, success: bool, duration_seconds: float | None = None) -> None:
        with self._lock:
            self._outcomes.append(success)
            if duration_seconds is not None:
                self._durations.append(duration_seconds)

    @property
    def samples(self) -> int:
        with self._lock:
            return len(self._outcomes)

    def error_rate_percent(self) -> float:
        with self._lock:
            if not self._outcomes:
                return 0.0
            failures = sum(1 for ok in self._outcomes if not ok)
            return 100.0 * failures / len(self._outcomes)

    def mean_duration_ms(self) -> float:
        with self._lock:
            if not self._durations:
                return 0.0
            return 1000.0 * sum(self._durations) / len(self._durations)


class PacingAction(str, Enum):
    """What to do before the next batch."""

    PROCEED = "proceed"
    DELAY = "delay"
    SHRINK = "shrink"


@dataclass(frozen=True)
class PacingDecision:
    action: PacingAction
    next_batch_size: int
    delay_seconds: float = 0.0
    error_rate_percent: float = 0.0
    latency_ms: float = 0.0


@dataclass(frozen=True)
class PacingConfig:
    """Thresholds for the pacing policy."""

    min_batch_size: int = DEFAULT_MIN_BATCH_SIZE
    shrink_factor: float = DEFAULT_SHRINK_FACTOR
    # Error rate (percent) at which the next batch is shrunk
    shrink_error_rate_percent: float = 20.0
    # Error rate (percent) at which the scheduler waits before the next batch
    delay_error_rate_percent: float = 5.0
    # Latency (ms) at which the next batch is shrunk / delayed
    shrink_latency_ms: float = 5000.0
    delay_latency_ms: float = 2000.0
    delay_seconds: float = DEFAULT_DELAY_SECONDS

    def __post_init__(self) -> None:
        if self.min_batch_size < 1:
            raise ValueError("min_batch_size must be at least 1")
        if not 0.0 < self.shrink_factor < 1.0:
            raise ValueError("shrink_factor must be between 0 and 1 (exclusive)")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds cannot be negative")


class PacingPolicy:
    """Decides inter-batch delay and batch size adjustments."""

    def __init__(self, config: PacingConfig | None = None) -> None:
        self._config = config or PacingConfig()

    @property
    def config(self) -> PacingConfig:
        return self._config

    def shrink(self, current_size: int) -> int:
        """Next batch size after a shrink; never larger than current_size."""
        shrunk = math.floor(current_size * self._config.shrink_factor)
        return min(current_size, max(self._config.min_batch_size, shrunk))

    def decide(
        self,
        current_size: int,
        error_rate_percent: float,
        sample: PerformanceSample | None = None,
    ) -> PacingDecision:
        """Decide what happens before the next batch.

        Args:
            current_size: Batch size in effect.
            error_rate_percent: Rolling error rate from the run's own calls.
            sample: Optional live reading from the endpoint.

        Returns:
            PacingDecision. next_batch_size is never above current_size.
        """
        cfg = self._config
        error_rate = error_rate_percent
        latency = 0.0
        if sample is not None:
            error_rate = max(error_rate, sample.error_rate_percent)
            latency = sample.latency_ms

        if error_rate >= cfg.shrink_error_rate_percent or latency >= cfg.shrink_latency_ms:
            next_size = self.shrink(current_size)
            if next_size < current_size:
                return PacingDecision(
                    action=PacingAction.SHRINK,
                    next_batch_size=next_size,
                    error_rate_percent=error_rate,
                    latency_ms=latency,
                )
            # Already at the floor: slow down instead
            return PacingDecision(
                action=PacingAction.DELAY,
                next_batch_size=current_size,
                delay_seconds=cfg.delay_seconds,
                error_rate_percent=error_rate,
                latency_ms=latency,
            )

        if error_rate >= cfg.delay_error_rate_percent or latency >= cfg.delay_latency_ms:
            return PacingDecision(
                action=PacingAction.DELAY,
                next_batch_size=current_size,
                delay_seconds=cfg.delay_seconds,
                error_rate_percent=error_rate,
                latency_ms=latency,
            )

        return PacingDecision(
            action=PacingAction.PROCEED,
            next_batch_size=current_size,
            error_rate_percent=error_rate,
            latency_ms=latency,
        )
