"""
Shared test doubles.
"""

import pytest

from ai_request_guard.core.token_counter import TokenUsage
from ai_request_guard.providers.base import ProviderResponse


class FakeClock:
    """Manually advanced clock returning seconds."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """Provider whose outcomes are scripted.

    Each call pops the next outcome: an exception is raised, a string is
    returned as the response text. When the script runs out, the prompt is
    echoed back.
    """

    def __init__(self, name="fake", model="fake-model", outcomes=None):
        self.name = name
        self.model_name = model
        self.outcomes = list(outcomes or [])
        self.calls = []
        self.usage = TokenUsage(0, 0)

    def call_llm(self, prompt):
        self.calls.append(prompt)
        outcome = self.outcomes.pop(0) if self.outcomes else f"{self.name}: {prompt}"
        if isinstance(outcome, Exception):
            raise outcome
        self.usage = self.usage + TokenUsage(10, 5)
        return ProviderResponse(
            text=outcome,
            input_tokens=10,
            completion_tokens=5,
            latency_ms=3,
            provider=self.name,
            model=self.model_name,
        )

    def is_available(self):
        return True

    def get_provider_name(self):
        return self.name

    def get_token_usage(self):
        return self.usage

    def reset_token_usage(self):
        self.usage = TokenUsage(0, 0)


class UnreachableProvider(FakeProvider):
    """Fails the test if the orchestrator ever reaches the network."""

    def call_llm(self, prompt):
        raise AssertionError(f"provider called during replay with {prompt!r}")


@pytest.fixture
def clock():
    return FakeClock()
