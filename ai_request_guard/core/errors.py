"""
Error taxonomy for text-generation calls.

Providers raise ``LLMError``; everything else is converted at the failover
boundary by ``classify_exception``.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorType(Enum):
    """Failure classes seen when calling a provider."""
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    API_ERROR = "api_error"
    INVALID_RESPONSE = "invalid_response"
    RATE_LIMITED = "rate_limited"
    PARSE_ERROR = "parse_error"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    UNKNOWN = "unknown"


_ALWAYS_RETRYABLE = {
    ErrorType.NETWORK_ERROR,
    ErrorType.TIMEOUT,
    ErrorType.RATE_LIMITED,
    ErrorType.INVALID_RESPONSE,
    ErrorType.PARSE_ERROR,
    ErrorType.PROVIDER_UNAVAILABLE,
}


def default_retryable(error_type: ErrorType, http_status: Optional[int] = None) -> bool:
    """Whether an error of this type is worth retrying.

    API errors are retryable for 5xx or unknown status only; any other 4xx is a
    malformed request or a permanent auth failure.
    """
    if error_type in _ALWAYS_RETRYABLE:
        return True
    if error_type == ErrorType.API_ERROR:
        return http_status is None or http_status >= 500
    return True


@dataclass(frozen=True)
class ErrorRecord:
    """Entry in the recent-errors window."""
    error_type: ErrorType
    attempt_number: int
    is_retryable: bool
    timestamp: float
    message: str = ""


class LLMError(Exception):
    """Raised by providers when a call does not produce usable text."""

    def __init__(
        self,
        error_type: ErrorType,
        message: str = "",
        http_status: Optional[int] = None,
        attempt_number: int = 0,
        is_retryable: Optional[bool] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ):
        super().__init__(message or error_type.value)
        self.error_type = error_type
        self.message = message
        self.http_status = http_status
        self.attempt_number = attempt_number
        self.provider = provider
        self.model = model
        if is_retryable is None:
            is_retryable = default_retryable(error_type, http_status)
        self.is_retryable = is_retryable

    def to_record(self, timestamp: Optional[float] = None) -> ErrorRecord:
        return ErrorRecord(
            error_type=self.error_type,
            attempt_number=self.attempt_number,
            is_retryable=self.is_retryable,
            timestamp=time.time() if timestamp is None else timestamp,
            message=self.message,
        )

    def __repr__(self) -> str:
        return (
            f"LLMError(type={self.error_type.name}, message={self.message!r}, "
            f"http_status={self.http_status}, attempt={self.attempt_number}, "
            f"retryable={self.is_retryable})"
        )


class ConfigurationError(ValueError):
    """Raised at construction time when the orchestrator cannot operate."""


class ReplayDivergenceError(RuntimeError):
    """Raised when a replayed run desynchronizes from recorded history."""

    def __init__(self, divergence):
        super().__init__(divergence.describe())
        self.divergence = divergence


def classify_exception(exc: Exception, provider: Optional[str] = None) -> LLMError:
    """Map an arbitrary exception raised by a provider onto the taxonomy."""
    if isinstance(exc, LLMError):
        return exc
    if isinstance(exc, TimeoutError):
        return LLMError(ErrorType.TIMEOUT, str(exc), provider=provider)
    if isinstance(exc, ConnectionError):
        return LLMError(ErrorType.NETWORK_ERROR, str(exc), provider=provider)
    if isinstance(exc, ValueError):
        return LLMError(ErrorType.PARSE_ERROR, str(exc), provider=provider)
    return LLMError(
        ErrorType.UNKNOWN,
        f"{type(exc).__name__}: {exc}",
        is_retryable=True,
        provider=provider,
    )
