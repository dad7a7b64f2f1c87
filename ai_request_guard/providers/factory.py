"""
Provider construction from configuration.
"""

from typing import List, Sequence

from ai_request_guard.config.loader import ProviderConfig, ProviderType

from .base import LLMProvider
from .ollama_provider import OllamaProvider
from .openai_provider import OpenAIProvider


def create_provider(config: ProviderConfig) -> LLMProvider:
    if config.type == ProviderType.OPENAI:
        return OpenAIProvider(
            model=config.model,
            timeout_seconds=config.timeout_seconds,
            base_url=config.base_url,
        )
    if config.type == ProviderType.OLLAMA:
        return OllamaProvider(
            model=config.model,
            host=config.base_url,
            timeout_seconds=config.timeout_seconds,
        )
    raise ValueError(f"Unsupported provider type: {config.type}")


def create_providers(configs: Sequence[ProviderConfig]) -> List[LLMProvider]:
    """Providers in failover order (ascending priority)."""
    return [create_provider(config) for config in sorted(configs, key=lambda c: c.priority)]
