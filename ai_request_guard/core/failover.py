"""
Provider failover chain.

Providers are tried in ascending priority order. Unhealthy providers are
skipped until their cooldown elapses, and when every provider has failed or
been skipped the offline fallback answers instead.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from ai_request_guard.providers.base import LLMProvider, ProviderResponse

from .errors import ErrorType, LLMError, classify_exception
from .offline import OfflineFallbackProvider
from .recovery import ErrorRecoveryManager
from .request import CallType
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)


@dataclass
class ProviderEntry:
    """A provider plus the health state the recovery manager maintains."""
    provider: LLMProvider
    priority: int
    failure_count: int = 0
    is_healthy: bool = True
    unhealthy_since: Optional[float] = None
    last_error: Optional[LLMError] = None

    @property
    def name(self) -> str:
        return self.provider.get_provider_name()

    @property
    def model(self) -> str:
        return self.provider.model_name


class FailoverChain:
    """Ordered providers terminated by an always-available offline fallback."""

    def __init__(
        self,
        providers: Iterable[LLMProvider] = (),
        recovery: Optional[ErrorRecoveryManager] = None,
        offline: Optional[OfflineFallbackProvider] = None,
    ):
        self.recovery = recovery or ErrorRecoveryManager()
        self.offline = offline or OfflineFallbackProvider()
        self.entries: List[ProviderEntry] = []
        for provider in providers:
            self.add_provider(provider)

    def add_provider(self, provider: LLMProvider, priority: Optional[int] = None) -> ProviderEntry:
        """Register a provider; lower priority values are tried first."""
        if priority is None:
            priority = len(self.entries)
        entry = ProviderEntry(provider=provider, priority=priority)
        self.entries.append(entry)
        # Stable sort keeps registration order among equal priorities
        self.entries.sort(key=lambda e: e.priority)
        return entry

    def try_providers(self, prompt: str, start_index: int = 0) -> Tuple[ProviderResponse, ProviderEntry]:
        """Call providers in order until one succeeds.

        Returns:
            The first successful response and the entry that produced it

        Raises:
            LLMError: The last provider error, or PROVIDER_UNAVAILABLE when
                every provider was skipped
        """
        last_error: Optional[LLMError] = None
        for entry in self.entries[start_index:]:
            if not self.recovery.is_provider_usable(entry):
                logger.debug("Skipping unhealthy provider %s", entry.name)
                continue
            try:
                response = entry.provider.call_llm(prompt)
            except Exception as exc:
                error = classify_exception(exc, provider=entry.name)
                error.provider = entry.name
                error.model = entry.model
                self.recovery.record_provider_failure(entry, error)
                logger.warning(
                    "Provider %s failed (%s): %s",
                    entry.name,
                    error.error_type.value,
                    error.message or error.error_type.value,
                )
                last_error = error
                continue
            self.recovery.record_provider_success(entry)
            return response, entry

        if last_error is not None:
            raise last_error
        raise LLMError(
            ErrorType.PROVIDER_UNAVAILABLE,
            "No usable provider in the failover chain",
        )

    def call_with_fallback(
        self,
        prompt: str,
        start_index: int = 0,
        call_type: CallType = CallType.UNKNOWN,
    ) -> ProviderResponse:
        """Like ``try_providers`` but never fails: exhaustion yields offline text."""
        try:
            response, _ = self.try_providers(prompt, start_index)
            return response
        except LLMError as error:
            logger.warning("All providers failed (%s); using offline fallback", error.error_type.value)
            return self.offline_response(prompt, call_type)

    def offline_response(self, prompt: str, call_type: CallType) -> ProviderResponse:
        return self.offline.generate(prompt, call_type)

    def is_available(self) -> bool:
        # The offline fallback is always available
        return True

    @property
    def provider_names(self) -> List[str]:
        return [entry.name for entry in self.entries]

    def get_token_usage(self) -> TokenUsage:
        usage = self.offline.get_token_usage()
        for entry in self.entries:
            usage = usage + entry.provider.get_token_usage()
        return usage

    def reset_token_usage(self) -> None:
        for entry in self.entries:
            entry.provider.reset_token_usage()
        self.offline.reset_token_usage()

    def health_snapshot(self) -> List[Dict[str, object]]:
        return [
            {
                "provider": entry.name,
                "model": entry.model,
                "priority": entry.priority,
                "healthy": entry.is_healthy,
                "failure_count": entry.failure_count,
                "last_error": entry.last_error.error_type.value if entry.last_error else None,
            }
            for entry in self.entries
        ]
