"""
Unit tests for retry delay calculation.
"""

import pytest

from ai_request_guard.core.backoff import BackoffCalculator, RetryStrategy


class TestStrategies:
    """Test delays without jitter."""

    def test_exponential(self):
        backoff = BackoffCalculator(base_delay_ms=1000, max_delay_ms=30000)
        assert [backoff.calculate_delay(n) for n in range(4)] == [1000, 2000, 4000, 8000]

    def test_exponential_capped(self):
        backoff = BackoffCalculator(base_delay_ms=1000, max_delay_ms=5000)
        assert [backoff.calculate_delay(n) for n in range(5)] == [1000, 2000, 4000, 5000, 5000]

    def test_linear(self):
        backoff = BackoffCalculator(strategy=RetryStrategy.LINEAR)
        assert [backoff.calculate_delay(n) for n in range(4)] == [1000, 2000, 3000, 4000]

    def test_fixed(self):
        backoff = BackoffCalculator(base_delay_ms=250, strategy=RetryStrategy.FIXED)
        assert [backoff.calculate_delay(n) for n in range(3)] == [250, 250, 250]

    def test_first_retry_uses_base_delay(self):
        for strategy in RetryStrategy:
            assert BackoffCalculator(base_delay_ms=700, strategy=strategy).calculate_delay(0) == 700

    def test_override_strategy(self):
        backoff = BackoffCalculator()
        assert backoff.calculate_delay_with_strategy(2, RetryStrategy.LINEAR) == 3000

    def test_next_retry_time(self):
        assert BackoffCalculator().get_next_retry_time(5000, 1) == 7000

    def test_negative_attempt_rejected(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            BackoffCalculator().calculate_delay(-1)

    def test_invalid_configuration(self):
        with pytest.raises(ValueError, match="base_delay_ms"):
            BackoffCalculator(base_delay_ms=0)
        with pytest.raises(ValueError, match="max_delay_ms"):
            BackoffCalculator(base_delay_ms=1000, max_delay_ms=500)
        with pytest.raises(ValueError, match="jitter_factor"):
            BackoffCalculator(jitter_factor=1.5)


class TestJitter:
    """Test jitter drawn from a supplied random source."""

    def test_lowest_draw_shrinks_delay(self):
        backoff = BackoffCalculator(use_jitter=True, jitter_factor=0.1, random_source=lambda: 0.0)
        assert backoff.calculate_delay(1) == 1800

    def test_middle_draw_keeps_delay(self):
        backoff = BackoffCalculator(use_jitter=True, jitter_factor=0.1, random_source=lambda: 0.5)
        assert backoff.calculate_delay(1) == 2000

    def test_jitter_never_exceeds_cap(self):
        backoff = BackoffCalculator(max_delay_ms=4000, use_jitter=True, jitter_factor=0.5,
                                    random_source=lambda: 0.999)
        assert backoff.calculate_delay(5) == 4000

    def test_same_stream_same_delays(self):
        draws = [0.1, 0.9, 0.4]
        first = BackoffCalculator(use_jitter=True, random_source=iter(draws).__next__)
        second = BackoffCalculator(use_jitter=True, random_source=iter(draws).__next__)
        assert [first.calculate_delay(n) for n in range(3)] == [second.calculate_delay(n) for n in range(3)]
