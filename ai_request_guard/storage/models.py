"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass
from datetime import datetime

from ai_request_guard.core.request import CallType


@dataclass(frozen=True)
class UsageEntry:
    """Immutable record of one provider call for cost tracking.

    Append-only entries that create an auditable ledger of generation costs.
    Once written, these records must never be modified.
    """
    timestamp: datetime
    model_name: str
    call_type: CallType
    input_tokens: int
    completion_tokens: int
    cost_usd: float
    was_successful: bool = True

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.completion_tokens

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "model_name": self.model_name,
            "call_type": self.call_type.value,
            "input_tokens": self.input_tokens,
            "completion_tokens": self.completion_tokens,
            "cost_usd": self.cost_usd,
            "was_successful": self.was_successful,
        }
