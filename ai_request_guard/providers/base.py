"""
Provider interface.

A provider is anything that can turn a prompt into text and report the tokens
it spent doing so. The failover chain only relies on this capability set.
"""

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from ai_request_guard.core.token_counter import TokenUsage


@dataclass(frozen=True)
class ProviderResponse:
    """Text produced by one successful provider call."""
    text: str
    input_tokens: int
    completion_tokens: int
    latency_ms: int
    provider: str
    model: str

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.completion_tokens


@runtime_checkable
class LLMProvider(Protocol):
    """Capability set every text-generation backend implements.

    ``call_llm`` returns a response or raises ``LLMError``.
    """

    model_name: str

    def call_llm(self, prompt: str) -> ProviderResponse:
        ...

    def is_available(self) -> bool:
        ...

    def get_provider_name(self) -> str:
        ...

    def get_token_usage(self) -> TokenUsage:
        ...

    def reset_token_usage(self) -> None:
        ...
