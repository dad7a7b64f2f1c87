"""
Response caching.

TTL- and LRU-bounded store keyed by the content hash of (prompt, call type).
TTL belongs to the call type, not to the individual entry.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from .request import CallType

logger = logging.getLogger(__name__)


DEFAULT_TTL_SECONDS: Dict[CallType, float] = {
    CallType.DECISION_INTERPRETATION: 1.0,
    CallType.WORLD_STATE_NARRATIVE: 300.0,
    CallType.NPC_CONVERSATION: 60.0,
    CallType.CRISIS_GENERATION: 120.0,
    CallType.UNKNOWN: 300.0,
}

DEFAULT_CAPACITY = 1000


@dataclass(frozen=True)
class CachedPayload:
    """Response text plus the accounting attached to it."""
    text: str
    input_tokens: int
    completion_tokens: int
    cost_usd: float = 0.0
    provider: str = ""
    model: str = ""

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.completion_tokens


@dataclass
class CacheEntry:
    """One cached response. At most one entry exists per key."""
    key: str
    call_type: CallType
    payload: CachedPayload
    cached_at: float
    ttl_seconds: float
    hit_count: int = 0

    def is_fresh(self, now: float) -> bool:
        return now - self.cached_at <= self.ttl_seconds


class ResponseCache:
    """LRU cache whose recency list is updated on every access."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        ttl_seconds: Optional[Mapping[CallType, float]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.ttl_seconds: Dict[CallType, float] = dict(DEFAULT_TTL_SECONDS)
        if ttl_seconds:
            self.ttl_seconds.update(ttl_seconds)
        self._clock = clock or time.monotonic
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.total_hits = 0
        self.total_misses = 0
        self.evictions = 0

    def ttl_for(self, call_type: CallType) -> float:
        return self.ttl_seconds.get(call_type, DEFAULT_TTL_SECONDS[CallType.UNKNOWN])

    def get(self, key: str) -> Optional[CachedPayload]:
        """Fresh payload for the key, or None on a miss.

        Expired entries count as misses but stay in place until evicted so
        they remain available to ``get_stale``.
        """
        entry = self._entries.get(key)
        if entry is None:
            self.total_misses += 1
            return None
        self._entries.move_to_end(key)
        if not entry.is_fresh(self._clock()):
            self.total_misses += 1
            return None
        entry.hit_count += 1
        self.total_hits += 1
        return entry.payload

    def get_stale(self, key: str) -> Optional[CachedPayload]:
        """Payload regardless of age, for the use-stale-on-failure policy."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        self._entries.move_to_end(key)
        return entry.payload

    def put(self, key: str, call_type: CallType, payload: CachedPayload) -> None:
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.capacity:
            evicted_key, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug("Evicted least recently used cache entry %s", evicted_key[:12])
        self._entries[key] = CacheEntry(
            key=key,
            call_type=call_type,
            payload=payload,
            cached_at=self._clock(),
            ttl_seconds=self.ttl_for(call_type),
        )

    def contains(self, key: str) -> bool:
        """Whether a fresh entry exists; does not touch statistics or recency."""
        entry = self._entries.get(key)
        return entry is not None and entry.is_fresh(self._clock())

    def entry(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if not entry.is_fresh(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self.total_hits = 0
        self.total_misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get_hit_rate(self) -> float:
        total = self.total_hits + self.total_misses
        if total == 0:
            return 0.0
        return self.total_hits / total

    def get_statistics(self) -> Dict[str, object]:
        return {
            "size": len(self._entries),
            "capacity": self.capacity,
            "hits": self.total_hits,
            "misses": self.total_misses,
            "hit_rate": self.get_hit_rate(),
            "evictions": self.evictions,
        }
