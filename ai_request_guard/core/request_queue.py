"""
Prioritized request queue.

Three bounded FIFO lanes dispatched in strict priority order, with
deduplication of pending (prompt, call type) pairs and tick-based timeouts.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from .request import Priority, Request

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueLimits:
    """Per-lane and global capacity."""
    urgent: int = 5
    standard: int = 3
    background: int = 10
    total: int = 15

    def __post_init__(self):
        for name in ("urgent", "standard", "background", "total"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} queue limit must be >= 1")

    def for_priority(self, priority: Priority) -> int:
        return {
            Priority.URGENT: self.urgent,
            Priority.STANDARD: self.standard,
            Priority.BACKGROUND: self.background,
        }[priority]


class PriorityRequestQueue:
    """Owns requests from enqueue until dispatch or timeout.

    Starvation of background requests under sustained urgent load is accepted.
    """

    def __init__(
        self,
        limits: Optional[QueueLimits] = None,
        on_timeout: Optional[Callable[[Request], None]] = None,
    ):
        """Initialize empty lanes.

        Args:
            limits: Lane and global caps
            on_timeout: Called once for every request evicted as timed out
        """
        self.limits = limits or QueueLimits()
        self.on_timeout = on_timeout
        self._lanes: Dict[Priority, Deque[Request]] = {p: deque() for p in Priority}
        self._pending_keys: Dict[str, int] = {}

    def enqueue(self, request: Request) -> bool:
        """Admit a request.

        Returns:
            False if the lane or the queue is full, or an identical
            (prompt, call type) pair is already pending
        """
        if request.key in self._pending_keys:
            logger.debug("Request %d deduplicated against pending request", request.id)
            return False
        if self.total_size() >= self.limits.total:
            logger.warning("Queue full (%d requests); rejecting request %d", self.total_size(), request.id)
            return False
        lane = self._lanes[request.priority]
        if len(lane) >= self.limits.for_priority(request.priority):
            logger.warning("%s lane full; rejecting request %d", request.priority.name, request.id)
            return False
        lane.append(request)
        self._pending_keys[request.key] = request.id
        return True

    def dequeue(self, current_tick: int) -> Optional[Request]:
        """Oldest ready request from the highest-priority non-empty lane."""
        self.process_timeouts(current_tick)
        for priority in Priority:
            request = self._pop_ready(priority, current_tick)
            if request is not None:
                return request
        return None

    def dequeue_from(self, priority: Priority, current_tick: int) -> Optional[Request]:
        """Oldest ready request from one lane."""
        self.process_timeouts(current_tick)
        return self._pop_ready(priority, current_tick)

    def has_ready_requests(self, current_tick: int, priority: Optional[Priority] = None) -> bool:
        lanes = [priority] if priority is not None else list(Priority)
        return any(
            request.is_ready(current_tick) and not request.is_timed_out(current_tick)
            for lane in lanes
            for request in self._lanes[lane]
        )

    def process_timeouts(self, current_tick: int) -> int:
        """Evict every request past its timeout.

        Returns:
            Number of requests evicted
        """
        expired = []
        for priority in Priority:
            lane = self._lanes[priority]
            if not any(r.is_timed_out(current_tick) for r in lane):
                continue
            kept: Deque[Request] = deque()
            for request in lane:
                if request.is_timed_out(current_tick):
                    expired.append(request)
                    self._pending_keys.pop(request.key, None)
                else:
                    kept.append(request)
            self._lanes[priority] = kept

        # Notify only after the lanes are consistent; callbacks may enqueue
        for request in expired:
            logger.warning(
                "Request %d (%s) timed out at tick %d (enqueued %d, timeout %d)",
                request.id,
                request.call_type.value,
                current_tick,
                request.enqueued_tick,
                request.timeout_ticks,
            )
            if self.on_timeout is not None:
                self.on_timeout(request)
        return len(expired)

    def is_pending(self, key: str) -> bool:
        return key in self._pending_keys

    def pending_request_id(self, key: str) -> Optional[int]:
        return self._pending_keys.get(key)

    def size(self, priority: Priority) -> int:
        return len(self._lanes[priority])

    def total_size(self) -> int:
        return sum(len(lane) for lane in self._lanes.values())

    def clear(self) -> None:
        for lane in self._lanes.values():
            lane.clear()
        self._pending_keys.clear()

    def _pop_ready(self, priority: Priority, current_tick: int) -> Optional[Request]:
        lane = self._lanes[priority]
        for index, request in enumerate(lane):
            if request.is_ready(current_tick):
                del lane[index]
                self._pending_keys.pop(request.key, None)
                return request
        return None
