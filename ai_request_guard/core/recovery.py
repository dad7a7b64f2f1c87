"""
Error recovery policy.

Classifies failures, decides between retry, fallback and failure, tracks the
recent-error window that drives degraded mode, and owns every mutation of
provider health.

Decision order for ``handle_error``:
1. Non-retryable error -> FAIL
2. Retries exhausted -> USE_FALLBACK (or FAIL when offline fallback is disabled)
3. Error rate or consecutive errors over threshold -> enter degraded mode, USE_FALLBACK
4. Garbled payload (invalid response, parse error) -> RETRY_IMMEDIATELY
5. Anything else -> RETRY_LATER with a backoff delay
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Callable, Deque, Dict, List, Optional

from .backoff import BackoffCalculator, RetryStrategy
from .errors import ErrorRecord, ErrorType, LLMError

if TYPE_CHECKING:
    from .failover import ProviderEntry

logger = logging.getLogger(__name__)


class RecoveryAction(Enum):
    """What the caller should do after a failed attempt."""
    RETRY_LATER = auto()
    RETRY_IMMEDIATELY = auto()
    USE_FALLBACK = auto()
    FAIL = auto()


@dataclass(frozen=True)
class RecoveryPolicy:
    """Tunables for retries, degraded mode and provider health."""
    max_retries: int = 3
    fallback_to_offline: bool = True
    window_size: int = 100
    min_samples: int = 10
    error_rate_threshold: float = 0.5
    consecutive_error_limit: int = 5
    degraded_cooldown_seconds: float = 300.0
    provider_failure_threshold: int = 3
    provider_cooldown_seconds: float = 60.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.window_size < 1:
            raise ValueError("window_size must be >= 1")
        if not 0 < self.error_rate_threshold <= 1:
            raise ValueError("error_rate_threshold must be in (0, 1]")
        if self.consecutive_error_limit < 1:
            raise ValueError("consecutive_error_limit must be >= 1")
        if self.provider_failure_threshold < 1:
            raise ValueError("provider_failure_threshold must be >= 1")


_IMMEDIATE_RETRY_TYPES = {ErrorType.INVALID_RESPONSE, ErrorType.PARSE_ERROR}


class ErrorRecoveryManager:
    """Retry/fallback decisions plus degraded-mode and provider-health state."""

    def __init__(
        self,
        policy: Optional[RecoveryPolicy] = None,
        backoff: Optional[BackoffCalculator] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.policy = policy or RecoveryPolicy()
        self.backoff = backoff or BackoffCalculator(strategy=RetryStrategy.EXPONENTIAL)
        self._clock = clock or time.monotonic

        self._outcomes: Deque[bool] = deque(maxlen=self.policy.window_size)
        self._recent_errors: Deque[ErrorRecord] = deque(maxlen=self.policy.window_size)
        self.total_errors = 0
        self.retryable_errors = 0
        self.consecutive_errors = 0
        self.successful_calls = 0
        self.degraded_since: Optional[float] = None
        self.degraded_entries = 0

    # ------------------------------------------------------------------
    # Retry decisions
    # ------------------------------------------------------------------
    def handle_error(self, error: LLMError, attempt_number: int) -> RecoveryAction:
        """Record the failure and decide what to do next.

        Args:
            error: Failure of the attempt
            attempt_number: 0-indexed number of the attempt that failed

        Returns:
            Recommended recovery action
        """
        self.record_error(error, attempt_number)
        degraded = self._should_enter_degraded_mode()
        if degraded:
            self._enter_degraded_mode()

        if not self.is_retryable(error):
            return RecoveryAction.FAIL

        if attempt_number >= self.policy.max_retries:
            if self.policy.fallback_to_offline:
                return RecoveryAction.USE_FALLBACK
            return RecoveryAction.FAIL

        if degraded:
            return RecoveryAction.USE_FALLBACK

        if error.error_type in _IMMEDIATE_RETRY_TYPES:
            return RecoveryAction.RETRY_IMMEDIATELY
        return RecoveryAction.RETRY_LATER

    def is_retryable(self, error: LLMError) -> bool:
        return error.is_retryable

    def get_retry_delay_ms(self, attempt_number: int) -> int:
        return self.backoff.calculate_delay(attempt_number)

    # ------------------------------------------------------------------
    # Error window
    # ------------------------------------------------------------------
    def record_error(self, error: LLMError, attempt_number: Optional[int] = None) -> ErrorRecord:
        if attempt_number is not None:
            error.attempt_number = attempt_number
        record = error.to_record(timestamp=self._clock())
        self._recent_errors.append(record)
        self._outcomes.append(True)
        self.total_errors += 1
        if record.is_retryable:
            self.retryable_errors += 1
            self.consecutive_errors += 1
        else:
            self.consecutive_errors = 0
        return record

    def record_success(self) -> None:
        self._outcomes.append(False)
        self.successful_calls += 1
        self.consecutive_errors = 0

    def get_error_rate(self) -> float:
        """Share of failed outcomes in the sliding window (0-1)."""
        if not self._outcomes:
            return 0.0
        return sum(self._outcomes) / len(self._outcomes)

    def recent_errors(self) -> List[ErrorRecord]:
        return list(self._recent_errors)

    def reset_error_tracking(self) -> None:
        self._outcomes.clear()
        self._recent_errors.clear()
        self.total_errors = 0
        self.retryable_errors = 0
        self.consecutive_errors = 0
        self.successful_calls = 0
        self.degraded_since = None

    def get_error_statistics(self) -> Dict[str, object]:
        return {
            "total_errors": self.total_errors,
            "retryable_errors": self.retryable_errors,
            "consecutive_errors": self.consecutive_errors,
            "successful_calls": self.successful_calls,
            "error_rate": self.get_error_rate(),
            "degraded_mode": self.degraded_since is not None,
            "degraded_entries": self.degraded_entries,
            "degraded_cooldown_seconds": self.policy.degraded_cooldown_seconds,
        }

    # ------------------------------------------------------------------
    # Degraded mode
    # ------------------------------------------------------------------
    def is_degraded(self) -> bool:
        """Whether calls should bypass the network.

        Leaves degraded mode once the cooldown has elapsed so the next call
        re-probes the primary provider.
        """
        if self.degraded_since is None:
            return False
        if self._clock() - self.degraded_since >= self.policy.degraded_cooldown_seconds:
            logger.info(
                "Leaving degraded mode after %.0fs; re-probing providers",
                self.policy.degraded_cooldown_seconds,
            )
            self.degraded_since = None
            self.consecutive_errors = 0
            self._outcomes.clear()
            return False
        return True

    def set_degraded_mode(self, enabled: bool) -> None:
        if enabled:
            self._enter_degraded_mode()
        else:
            self.degraded_since = None

    def _should_enter_degraded_mode(self) -> bool:
        if self.consecutive_errors >= self.policy.consecutive_error_limit:
            return True
        return (
            len(self._outcomes) >= self.policy.min_samples
            and self.get_error_rate() > self.policy.error_rate_threshold
        )

    def _enter_degraded_mode(self) -> None:
        if self.degraded_since is not None:
            return
        self.degraded_since = self._clock()
        self.degraded_entries += 1
        logger.warning(
            "Entering degraded mode for %.0fs (error rate %.0f%%, %d consecutive errors)",
            self.policy.degraded_cooldown_seconds,
            self.get_error_rate() * 100,
            self.consecutive_errors,
        )

    # ------------------------------------------------------------------
    # Provider health
    # ------------------------------------------------------------------
    def record_provider_failure(self, entry: "ProviderEntry", error: LLMError) -> None:
        entry.failure_count += 1
        entry.last_error = error
        if entry.is_healthy and entry.failure_count >= self.policy.provider_failure_threshold:
            entry.is_healthy = False
            entry.unhealthy_since = self._clock()
            logger.warning(
                "Provider %s marked unhealthy after %d consecutive failures",
                entry.name,
                entry.failure_count,
            )

    def record_provider_success(self, entry: "ProviderEntry") -> None:
        entry.failure_count = 0
        entry.last_error = None
        if not entry.is_healthy:
            logger.info("Provider %s recovered", entry.name)
        entry.is_healthy = True
        entry.unhealthy_since = None

    def is_provider_usable(self, entry: "ProviderEntry") -> bool:
        """Healthy providers are usable; unhealthy ones again after a cooldown.

        A provider coming out of cooldown is on probation: one more failure
        marks it unhealthy again.
        """
        if entry.is_healthy:
            return True
        if entry.unhealthy_since is None:
            return False
        if self._clock() - entry.unhealthy_since >= self.policy.provider_cooldown_seconds:
            logger.info("Provider %s cooldown elapsed; re-probing", entry.name)
            entry.is_healthy = True
            entry.unhealthy_since = None
            entry.failure_count = self.policy.provider_failure_threshold - 1
            return True
        return False
