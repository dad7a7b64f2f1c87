"""
Unit tests for the token bucket rate limiter.
"""

import pytest

from ai_request_guard.core.rate_limiter import TokenBucketRateLimiter


class TestTokenBucket:
    """Test token spending and lazy refill."""

    def test_n_plus_first_request_denied(self, clock):
        """With zero elapsed time, exactly N requests pass."""
        limiter = TokenBucketRateLimiter(max_tokens_per_minute=5, clock=clock)
        assert all(limiter.can_make_request() for _ in range(5))
        assert not limiter.can_make_request()

    def test_refills_at_max_over_sixty_per_second(self, clock):
        limiter = TokenBucketRateLimiter(max_tokens_per_minute=60, clock=clock)
        for _ in range(60):
            limiter.can_make_request()
        assert not limiter.can_make_request()

        clock.advance(1.0)
        assert limiter.can_make_request()
        assert not limiter.can_make_request()

    def test_refill_is_capped(self, clock):
        limiter = TokenBucketRateLimiter(max_tokens_per_minute=10, clock=clock)
        limiter.can_make_request()
        clock.advance(600)
        assert limiter.get_available_tokens() == 10

    def test_wait_time(self, clock):
        limiter = TokenBucketRateLimiter(max_tokens_per_minute=60, clock=clock)
        assert limiter.get_wait_time_seconds() == 0
        for _ in range(60):
            limiter.can_make_request()
        assert limiter.get_wait_time_seconds() == pytest.approx(1.0)

        clock.advance(0.25)
        assert limiter.get_wait_time_seconds() == pytest.approx(0.75)

    def test_reset_refills(self, clock):
        limiter = TokenBucketRateLimiter(max_tokens_per_minute=2, clock=clock)
        limiter.can_make_request()
        limiter.can_make_request()
        limiter.reset()
        assert limiter.get_available_tokens() == 2

    def test_set_rate_limit_clamps_tokens(self, clock):
        limiter = TokenBucketRateLimiter(max_tokens_per_minute=60, clock=clock)
        limiter.set_rate_limit(6)
        assert limiter.get_available_tokens() == 6
        assert limiter.refill_rate == pytest.approx(0.1)

    def test_invalid_rate(self):
        with pytest.raises(ValueError, match="must be > 0"):
            TokenBucketRateLimiter(max_tokens_per_minute=0)
