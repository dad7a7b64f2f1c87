"""
Token counting and usage tracking.

Token counts reported by providers, plus a rough estimate for text no
provider counted.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    input_tokens: int
    completion_tokens: int

    def __post_init__(self):
        if self.input_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + completion)."""
        return self.input_tokens + self.completion_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


def estimate_tokens(text: str) -> int:
    """Rough token count for text a provider did not count (4 chars per token)."""
    return len(text) // 4
