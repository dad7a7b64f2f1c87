"""
Retry delay calculation.

Computes per-attempt delays under a chosen strategy, with optional jitter
drawn from a caller-supplied deterministic random source.
"""

import random
from enum import Enum
from typing import Callable, Optional


class RetryStrategy(Enum):
    """How the delay grows with the attempt number."""
    EXPONENTIAL = "exponential"  # 1s, 2s, 4s, 8s...
    LINEAR = "linear"            # 1s, 2s, 3s, 4s...
    FIXED = "fixed"              # 1s, 1s, 1s, 1s...


class BackoffCalculator:
    """Backoff delays in milliseconds.

    Attempt numbers are 0-indexed: the first retry after the initial failure
    waits ``calculate_delay(0)``, which is the base delay.
    """

    def __init__(
        self,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 30000,
        strategy: RetryStrategy = RetryStrategy.EXPONENTIAL,
        use_jitter: bool = False,
        jitter_factor: float = 0.1,
        random_source: Optional[Callable[[], float]] = None,
    ):
        """Initialize the calculator.

        Args:
            base_delay_ms: Delay of attempt 0
            max_delay_ms: Upper bound for any delay
            strategy: Growth strategy
            use_jitter: Whether to spread delays by +/- jitter_factor
            jitter_factor: Jitter magnitude (0.1 = +/-10%)
            random_source: Callable returning floats in [0, 1); replayed runs
                must pass the same stream they recorded with

        Raises:
            ValueError: If delays or jitter factor are out of range
        """
        if base_delay_ms <= 0:
            raise ValueError("base_delay_ms must be > 0")
        if max_delay_ms < base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        if not 0 <= jitter_factor <= 1:
            raise ValueError("jitter_factor must be between 0 and 1")
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.strategy = strategy
        self.use_jitter = use_jitter
        self.jitter_factor = jitter_factor
        self._random = random_source or random.Random(0).random

    def calculate_delay(self, attempt_number: int) -> int:
        return self.calculate_delay_with_strategy(attempt_number, self.strategy)

    def calculate_delay_with_strategy(self, attempt_number: int, strategy: RetryStrategy) -> int:
        if attempt_number < 0:
            raise ValueError("attempt_number cannot be negative")

        if strategy == RetryStrategy.EXPONENTIAL:
            delay = self.base_delay_ms * (2 ** attempt_number)
        elif strategy == RetryStrategy.LINEAR:
            delay = self.base_delay_ms * (attempt_number + 1)
        else:
            delay = self.base_delay_ms

        if self.use_jitter:
            delay = self._apply_jitter(min(delay, self.max_delay_ms))

        return max(1, min(int(delay), self.max_delay_ms))

    def get_next_retry_time(self, current_time_ms: int, attempt_number: int) -> int:
        """Timestamp (ms) at which the next retry should occur."""
        return current_time_ms + self.calculate_delay(attempt_number)

    def _apply_jitter(self, delay: float) -> float:
        spread = delay * self.jitter_factor
        # Map [0, 1) onto [-spread, +spread)
        return delay + (2.0 * self._random() - 1.0) * spread
