"""
Unit tests for storage layer.

Tests schema creation, ledger appends, and retrieval operations.
"""

import os
import tempfile
from datetime import datetime, timedelta

import pytest

from ai_request_guard.core.request import CallType
from ai_request_guard.core.usage import UsageTracker
from ai_request_guard.storage.db import get_connection
from ai_request_guard.storage.models import UsageEntry
from ai_request_guard.storage.repository import (
    UsageRepository,
    initialize_schema,
    insert_usage_entry,
)


def make_entry(**overrides):
    values = dict(
        timestamp=datetime.now(),
        model_name="gpt-4",
        call_type=CallType.NPC_CONVERSATION,
        input_tokens=100,
        completion_tokens=50,
        cost_usd=0.006,
        was_successful=True,
    )
    values.update(overrides)
    return UsageEntry(**values)


@pytest.fixture
def repository():
    with tempfile.TemporaryDirectory() as temp_dir:
        repo = UsageRepository(os.path.join(temp_dir, "test.db"))
        repo.initialize_schema()
        yield repo


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify table is created correctly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                columns = [col[1] for col in conn.execute("PRAGMA table_info(usage_entry)").fetchall()]
            finally:
                conn.close()

            assert columns == [
                "id", "timestamp", "model_name", "call_type", "input_tokens",
                "completion_tokens", "cost_usd", "was_successful",
            ]


class TestEntryInsertion:
    """Test ledger append operations."""

    def test_insert_and_fetch_single_entry(self, repository):
        entry = make_entry(timestamp=datetime(2024, 1, 1, 12, 0, 0), was_successful=False)
        insert_usage_entry(entry, repository.db_path)

        entries = repository.get_recent_entries()
        assert entries == [entry]

    def test_appended_entries_newest_first(self, repository):
        older = make_entry(timestamp=datetime(2024, 1, 1, 12, 0, 0))
        newer = make_entry(timestamp=datetime(2024, 1, 1, 12, 5, 0), model_name="gpt-3.5-turbo")
        repository.append(older)
        repository.append(newer)

        assert [e.model_name for e in repository.get_recent_entries()] == ["gpt-3.5-turbo", "gpt-4"]

    def test_tracker_appends_to_repository(self, repository):
        tracker = UsageTracker(repository=repository)
        tracker.record_usage("gpt-4", CallType.CRISIS_GENERATION, 10, 5)

        entries = repository.get_recent_entries()
        assert len(entries) == 1
        assert entries[0].call_type == CallType.CRISIS_GENERATION
        assert entries[0].cost_usd == tracker.total_cost


class TestRetrieval:
    """Test filtering and aggregation."""

    def test_filters(self, repository):
        now = datetime.now()
        repository.append(make_entry(timestamp=now - timedelta(days=10)))
        repository.append(make_entry(timestamp=now, model_name="gpt-3.5-turbo"))
        repository.append(make_entry(timestamp=now, call_type=CallType.DECISION_INTERPRETATION))

        assert len(repository.get_recent_entries(model="gpt-4")) == 2
        assert len(repository.get_recent_entries(call_type=CallType.DECISION_INTERPRETATION)) == 1
        assert len(repository.get_recent_entries(days=1)) == 2
        assert len(repository.get_recent_entries(limit=1)) == 1

    def test_newest_first(self, repository):
        older = make_entry(timestamp=datetime(2024, 1, 1))
        newer = make_entry(timestamp=datetime(2024, 1, 2))
        repository.append(older)
        repository.append(newer)
        assert repository.get_recent_entries() == [newer, older]

    def test_usage_stats(self, repository):
        repository.append(make_entry())
        repository.append(make_entry(was_successful=False, input_tokens=0, completion_tokens=0, cost_usd=0.0))
        repository.append(make_entry(model_name="llama", call_type=CallType.CRISIS_GENERATION, cost_usd=0.0))

        by_model = repository.get_usage_stats()
        assert by_model["gpt-4"]["total_calls"] == 2
        assert by_model["gpt-4"]["successful_calls"] == 1
        assert by_model["gpt-4"]["input_tokens"] == 100
        assert by_model["gpt-4"]["total_cost"] == pytest.approx(0.006)

        by_call_type = repository.get_usage_stats(group_by="call_type")
        assert set(by_call_type) == {"npc_conversation", "crisis_generation"}

    def test_invalid_grouping(self, repository):
        with pytest.raises(ValueError):
            repository.get_usage_stats(group_by="cost_usd; DROP TABLE usage_entry")
