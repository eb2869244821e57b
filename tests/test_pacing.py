"""Tests for the pacing policy and rolling error rate."""

import pytest

from fleet_reconciler.endpoint import PerformanceSample
from fleet_reconciler.pacing import (
    ErrorRateCounter,
    PacingAction,
    PacingConfig,
    PacingPolicy,
)


class TestErrorRateCounter:
    """Tests for ErrorRateCounter."""

    def test_empty_counter(self) -> None:
        """Test that no samples means no errors."""
        counter = ErrorRateCounter()

        assert counter.error_rate_percent() == 0.0
        assert counter.mean_duration_ms() == 0.0

    def test_rolling_window(self) -> None:
        """Test that old outcomes fall out of the window."""
        counter = ErrorRateCounter(window_size=4)
        for _ in range(4):
            counter.record(False)
        for _ in range(4):
            counter.record(True)

        assert counter.samples == 4
        assert counter.error_rate_percent() == 0.0

    def test_error_rate_and_latency(self) -> None:
        """Test rate and mean latency."""
        counter = ErrorRateCounter()
        counter.record(True, 0.1)
        counter.record(False, 0.3)

        assert counter.error_rate_percent() == 50.0
        assert counter.mean_duration_ms() == pytest.approx(200.0)


class TestPacingPolicy:
    """Tests for PacingPolicy.decide()."""

    def test_proceed_when_healthy(self) -> None:
        """Test that a healthy endpoint keeps the batch size."""
        decision = PacingPolicy().decide(20, 0.0, PerformanceSample(0.0, 100.0))

        assert decision.action == PacingAction.PROCEED
        assert decision.next_batch_size == 20

    def test_delay_on_moderate_error_rate(self) -> None:
        """Test that a moderate error rate delays the next batch."""
        policy = PacingPolicy(PacingConfig(delay_seconds=7))

        decision = policy.decide(20, 10.0)

        assert decision.action == PacingAction.DELAY
        assert decision.delay_seconds == 7
        assert decision.next_batch_size == 20

    def test_shrink_on_high_error_rate(self) -> None:
        """Test that a high error rate shrinks the next batch."""
        decision = PacingPolicy().decide(20, 25.0)

        assert decision.action == PacingAction.SHRINK
        assert decision.next_batch_size == 10

    def test_shrink_on_signal_latency(self) -> None:
        """Test that the live signal alone can trigger a shrink."""
        decision = PacingPolicy().decide(20, 0.0, PerformanceSample(0.0, 6000.0))

        assert decision.action == PacingAction.SHRINK

    def test_signal_error_rate_counts(self) -> None:
        """Test that the worse of the two error rates is used."""
        decision = PacingPolicy().decide(20, 0.0, PerformanceSample(30.0, 0.0))

        assert decision.action == PacingAction.SHRINK
        assert decision.error_rate_percent == 30.0

    def test_shrink_respects_floor(self) -> None:
        """Test that shrinking stops at min_batch_size."""
        policy = PacingPolicy(PacingConfig(min_batch_size=5, shrink_factor=0.5))

        assert policy.shrink(8) == 5
        assert policy.shrink(5) == 5

    def test_shrink_never_grows_small_batches(self) -> None:
        """Test that a batch below the floor is not grown back to it."""
        policy = PacingPolicy(PacingConfig(min_batch_size=5))

        assert policy.shrink(3) == 3

    def test_delay_at_floor(self) -> None:
        """Test that a shrink signal at the floor becomes a delay."""
        policy = PacingPolicy(PacingConfig(min_batch_size=5))

        decision = policy.decide(5, 50.0)

        assert decision.action == PacingAction.DELAY
        assert decision.next_batch_size == 5

    @pytest.mark.parametrize("size", [1, 5, 17, 100, 500])
    @pytest.mark.parametrize("error_rate", [0.0, 6.0, 50.0])
    def test_next_size_never_exceeds_current(self, size: int, error_rate: float) -> None:
        """Test that no decision grows the batch."""
        decision = PacingPolicy().decide(size, error_rate, PerformanceSample(0.0, 9000.0))

        assert decision.next_batch_size <= size

    def test_invalid_config(self) -> None:
        """Test PacingConfig validation."""
        with pytest.raises(ValueError):
            PacingConfig(shrink_factor=1.0)
        with pytest.raises(ValueError):
            PacingConfig(min_batch_size=0)
