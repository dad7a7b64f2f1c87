"""
Request model for outbound text-generation calls.

Defines priorities, call types and the immutable request record that the
queue owns between enqueue and dispatch.
"""

import hashlib
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict


class Priority(Enum):
    """Dispatch lanes, in strict priority order."""
    URGENT = 0      # Player decision interpretation
    STANDARD = 1    # World state narrative, crisis generation
    BACKGROUND = 2  # NPC ambient dialogue


class CallType(Enum):
    """Purpose of a call; determines cache TTL and default priority."""
    DECISION_INTERPRETATION = "decision_interpretation"
    WORLD_STATE_NARRATIVE = "world_state_narrative"
    NPC_CONVERSATION = "npc_conversation"
    CRISIS_GENERATION = "crisis_generation"
    UNKNOWN = "unknown"


# Ticks before a queued request times out (60 ticks per second)
DEFAULT_TIMEOUT_TICKS: Dict[Priority, int] = {
    Priority.URGENT: 180,
    Priority.STANDARD: 600,
    Priority.BACKGROUND: 1800,
}

DEFAULT_PRIORITY_BY_CALL_TYPE: Dict[CallType, Priority] = {
    CallType.DECISION_INTERPRETATION: Priority.URGENT,
    CallType.WORLD_STATE_NARRATIVE: Priority.STANDARD,
    CallType.CRISIS_GENERATION: Priority.STANDARD,
    CallType.NPC_CONVERSATION: Priority.BACKGROUND,
    CallType.UNKNOWN: Priority.STANDARD,
}


def normalize_prompt(prompt: str) -> str:
    """Collapse runs of whitespace so cosmetic differences share a key."""
    return " ".join(prompt.split())


def make_cache_key(prompt: str, call_type: CallType) -> str:
    """Stable content-addressed key for a (prompt, call type) pair."""
    material = f"{call_type.value}\x00{normalize_prompt(prompt)}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Request:
    """Immutable description of one outbound call.

    Only the retry bookkeeping fields change over a request's life, and they
    change by producing a new instance (see ``with_retry``).
    """
    id: int
    priority: Priority
    prompt: str
    call_type: CallType
    enqueued_tick: int
    timeout_ticks: int
    attempt_count: int = 0
    next_retry_tick: int = 0

    def __post_init__(self):
        if not self.prompt or not self.prompt.strip():
            raise ValueError("prompt is required and cannot be empty")
        if self.timeout_ticks < 0:
            raise ValueError("timeout_ticks cannot be negative")

    @property
    def key(self) -> str:
        """Cache and deduplication key."""
        return make_cache_key(self.prompt, self.call_type)

    @property
    def deadline_tick(self) -> int:
        """Last tick at which the request may still be dispatched."""
        return self.enqueued_tick + self.timeout_ticks

    def is_timed_out(self, current_tick: int) -> bool:
        return self.enqueued_tick + self.timeout_ticks < current_tick

    def is_ready(self, current_tick: int) -> bool:
        return self.next_retry_tick <= current_tick

    def with_retry(self, next_retry_tick: int) -> "Request":
        """Copy with the attempt consumed and the retry scheduled.

        The retried request re-enters the queue as a fresh request at the tick
        it becomes ready, so its timeout budget restarts there.
        """
        return replace(
            self,
            attempt_count=self.attempt_count + 1,
            next_retry_tick=next_retry_tick,
            enqueued_tick=next_retry_tick,
        )
