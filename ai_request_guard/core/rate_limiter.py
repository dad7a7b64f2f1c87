"""
Token bucket rate limiting.

Admits or defers calls against a provider-wide requests-per-minute budget.
"""

import time
from typing import Callable, Optional


class TokenBucketRateLimiter:
    """Token bucket refilled lazily on every check.

    The bucket holds at most ``max_tokens`` tokens and refills at
    ``max_tokens / 60`` tokens per elapsed second. Every admitted request,
    including retries, spends exactly one token.
    """

    def __init__(
        self,
        max_tokens_per_minute: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        """Initialize a full bucket.

        Args:
            max_tokens_per_minute: Requests allowed per minute (bucket size)
            clock: Callable returning seconds; defaults to ``time.monotonic``

        Raises:
            ValueError: If the rate is not positive
        """
        if max_tokens_per_minute <= 0:
            raise ValueError("max_tokens_per_minute must be > 0")
        self._clock = clock or time.monotonic
        self.max_tokens = float(max_tokens_per_minute)
        self.refill_rate = self.max_tokens / 60.0
        self.tokens_available = self.max_tokens
        self._last_refill = self._clock()

    def can_make_request(self) -> bool:
        """Refill, then spend one token if available."""
        self._refill()
        if self.tokens_available >= 1.0:
            self.tokens_available -= 1.0
            return True
        return False

    def get_available_tokens(self) -> float:
        self._refill()
        return self.tokens_available

    def get_wait_time_seconds(self) -> float:
        """Seconds until one token will be available (0 if available now)."""
        self._refill()
        return max(0.0, (1.0 - self.tokens_available) / self.refill_rate)

    def reset(self) -> None:
        self.tokens_available = self.max_tokens
        self._last_refill = self._clock()

    def set_rate_limit(self, max_tokens_per_minute: float) -> None:
        if max_tokens_per_minute <= 0:
            raise ValueError("max_tokens_per_minute must be > 0")
        self._refill()
        self.max_tokens = float(max_tokens_per_minute)
        self.refill_rate = self.max_tokens / 60.0
        self.tokens_available = min(self.tokens_available, self.max_tokens)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed <= 0:
            return
        self.tokens_available = min(
            self.max_tokens,
            self.tokens_available + elapsed * self.refill_rate,
        )
        self._last_refill = now
