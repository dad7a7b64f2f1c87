"""
Unit tests for the prioritized request queue.

Tests strict priority, lane and global caps, deduplication and timeouts.
"""

import pytest

from ai_request_guard.core.request import CallType, Priority, Request, make_cache_key
from ai_request_guard.core.request_queue import PriorityRequestQueue, QueueLimits


def make_request(request_id, priority=Priority.STANDARD, prompt=None, enqueued_tick=0,
                 timeout_ticks=600, call_type=CallType.WORLD_STATE_NARRATIVE, next_retry_tick=0):
    return Request(
        id=request_id,
        priority=priority,
        prompt=prompt or f"prompt {request_id}",
        call_type=call_type,
        enqueued_tick=enqueued_tick,
        timeout_ticks=timeout_ticks,
        next_retry_tick=next_retry_tick,
    )


class TestRequest:
    """Test the immutable request record."""

    def test_empty_prompt_rejected(self):
        with pytest.raises(ValueError, match="prompt is required"):
            make_request(1, prompt="   ")

    def test_timed_out_strictly_after_deadline(self):
        request = make_request(1, enqueued_tick=10, timeout_ticks=5)
        assert request.deadline_tick == 15
        assert not request.is_timed_out(15)
        assert request.is_timed_out(16)

    def test_with_retry_restarts_timeout_budget(self):
        request = make_request(1, enqueued_tick=10, timeout_ticks=5)
        retry = request.with_retry(70)
        assert retry.attempt_count == 1
        assert retry.next_retry_tick == 70
        assert retry.enqueued_tick == 70
        assert request.attempt_count == 0

    def test_cache_key_ignores_whitespace_but_not_call_type(self):
        assert make_cache_key("a  b\n", CallType.UNKNOWN) == make_cache_key("a b", CallType.UNKNOWN)
        assert make_cache_key("a b", CallType.UNKNOWN) != make_cache_key("a b", CallType.NPC_CONVERSATION)


class TestPriorityOrdering:
    """Test dispatch order."""

    @pytest.mark.parametrize("urgent_first", [True, False])
    def test_urgent_dequeued_before_background(self, urgent_first):
        """Urgent wins regardless of enqueue order."""
        queue = PriorityRequestQueue()
        urgent = make_request(1, Priority.URGENT, timeout_ticks=180)
        background = make_request(2, Priority.BACKGROUND, timeout_ticks=1800)
        for request in ([urgent, background] if urgent_first else [background, urgent]):
            assert queue.enqueue(request)

        assert queue.dequeue(0).id == 1
        assert queue.dequeue(0).id == 2
        assert queue.dequeue(0) is None

    def test_fifo_within_lane(self):
        queue = PriorityRequestQueue()
        for request_id in (1, 2, 3):
            queue.enqueue(make_request(request_id))
        assert [queue.dequeue(0).id for _ in range(3)] == [1, 2, 3]

    def test_request_waiting_for_retry_is_skipped(self):
        queue = PriorityRequestQueue()
        queue.enqueue(make_request(1, next_retry_tick=50, enqueued_tick=50))
        queue.enqueue(make_request(2))

        assert queue.dequeue(10).id == 2
        assert queue.dequeue(10) is None
        assert queue.has_ready_requests(50)
        assert queue.dequeue(50).id == 1


class TestCapacity:
    """Test lane and global limits."""

    def test_lane_cap(self):
        queue = PriorityRequestQueue(QueueLimits(standard=2))
        assert queue.enqueue(make_request(1))
        assert queue.enqueue(make_request(2))
        assert not queue.enqueue(make_request(3))
        assert queue.size(Priority.STANDARD) == 2

    def test_global_cap(self):
        queue = PriorityRequestQueue(QueueLimits(urgent=5, standard=5, background=5, total=3))
        assert queue.enqueue(make_request(1, Priority.URGENT))
        assert queue.enqueue(make_request(2, Priority.STANDARD))
        assert queue.enqueue(make_request(3, Priority.BACKGROUND))
        assert not queue.enqueue(make_request(4, Priority.URGENT))
        assert queue.total_size() == 3

    def test_invalid_limits(self):
        with pytest.raises(ValueError, match="urgent queue limit"):
            QueueLimits(urgent=0)


class TestDeduplication:
    """Test (prompt, call type) deduplication."""

    def test_identical_pending_request_rejected(self):
        queue = PriorityRequestQueue()
        assert queue.enqueue(make_request(1, prompt="same prompt"))
        assert not queue.enqueue(make_request(2, prompt="same  prompt"))
        assert queue.pending_request_id(make_cache_key("same prompt", CallType.WORLD_STATE_NARRATIVE)) == 1

    def test_same_prompt_different_call_type_allowed(self):
        queue = PriorityRequestQueue()
        assert queue.enqueue(make_request(1, prompt="same"))
        assert queue.enqueue(make_request(2, prompt="same", call_type=CallType.CRISIS_GENERATION))

    def test_dedup_released_after_dequeue(self):
        queue = PriorityRequestQueue()
        queue.enqueue(make_request(1, prompt="same"))
        queue.dequeue(0)
        assert queue.enqueue(make_request(2, prompt="same"))


class TestTimeouts:
    """Test timeout eviction."""

    def test_dequeue_never_returns_expired_request(self):
        timed_out = []
        queue = PriorityRequestQueue(on_timeout=timed_out.append)
        queue.enqueue(make_request(1, Priority.URGENT, timeout_ticks=180))
        queue.enqueue(make_request(2, Priority.BACKGROUND, timeout_ticks=1800))

        request = queue.dequeue(181)
        assert request.id == 2
        assert request.enqueued_tick + request.timeout_ticks >= 181
        assert [r.id for r in timed_out] == [1]

    def test_request_at_deadline_still_dispatched(self):
        queue = PriorityRequestQueue()
        queue.enqueue(make_request(1, timeout_ticks=100))
        assert queue.dequeue(100).id == 1

    def test_process_timeouts_counts_and_releases_keys(self):
        queue = PriorityRequestQueue()
        queue.enqueue(make_request(1, prompt="a", timeout_ticks=10))
        queue.enqueue(make_request(2, prompt="b", timeout_ticks=10))
        queue.enqueue(make_request(3, prompt="c", timeout_ticks=100))

        assert queue.process_timeouts(11) == 2
        assert queue.total_size() == 1
        assert queue.enqueue(make_request(4, prompt="a", enqueued_tick=11))

    def test_timeout_callback_may_enqueue(self):
        """Callbacks run after the lanes are consistent."""
        queue = PriorityRequestQueue()

        def resubmit(request):
            queue.enqueue(make_request(request.id + 100, prompt=request.prompt, enqueued_tick=20))

        queue.on_timeout = resubmit
        queue.enqueue(make_request(1, timeout_ticks=5))
        queue.enqueue(make_request(2, timeout_ticks=50))

        assert queue.process_timeouts(20) == 1
        assert [queue.dequeue(20).id, queue.dequeue(20).id] == [2, 101]
