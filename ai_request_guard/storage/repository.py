"""
Repository pattern for data access.

Handles persistence of the append-only usage ledger.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ai_request_guard.core.request import CallType

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageEntry

_COLUMNS = (
    "timestamp, model_name, call_type, input_tokens, "
    "completion_tokens, cost_usd, was_successful"
)


def _row_to_entry(row) -> UsageEntry:
    return UsageEntry(
        timestamp=datetime.fromisoformat(row[0]),
        model_name=row[1],
        call_type=CallType(row[2]),
        input_tokens=row[3],
        completion_tokens=row[4],
        cost_usd=row[5],
        was_successful=bool(row[6]),
    )


def _entry_to_row(entry: UsageEntry) -> tuple:
    return (
        entry.timestamp.isoformat(),
        entry.model_name,
        entry.call_type.value,
        entry.input_tokens,
        entry.completion_tokens,
        entry.cost_usd,
        int(entry.was_successful),
    )


class UsageRepository:
    """Repository for reading and appending usage entries.

    The ledger is append-only: no UPDATE or DELETE is ever issued.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        initialize_schema(self.db_path)

    def append(self, entry: UsageEntry) -> None:
        insert_usage_entry(entry, self.db_path)

    def get_recent_entries(
        self,
        model: Optional[str] = None,
        call_type: Optional[CallType] = None,
        days: Optional[int] = None,
        limit: int = 1000,
    ) -> List[UsageEntry]:
        """Get recent usage entries with optional filtering.

        Args:
            model: Optional filter for a specific model
            call_type: Optional filter for a specific call type
            days: Optional number of days to look back
            limit: Maximum number of entries to return

        Returns:
            List of entries ordered by timestamp (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_COLUMNS} FROM usage_entry"
            params = []
            conditions = []

            if model:
                conditions.append("model_name = ?")
                params.append(model)
            if call_type is not None:
                conditions.append("call_type = ?")
                params.append(call_type.value)
            if days is not None:
                cutoff = (datetime.now() - timedelta(days=days)).isoformat()
                conditions.append("timestamp >= ?")
                params.append(cutoff)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
            params.append(limit)

            cursor = conn.execute(query, params)
            return [_row_to_entry(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_usage_stats(self, group_by: str = "model_name", days: Optional[int] = None) -> Dict[str, Dict[str, float]]:
        """Aggregate the ledger per model or per call type.

        Args:
            group_by: "model_name" or "call_type"
            days: Optional number of days to look back

        Returns:
            Mapping of group value to calls, tokens and cost totals
        """
        if group_by not in ("model_name", "call_type"):
            raise ValueError("group_by must be 'model_name' or 'call_type'")

        conn = get_connection(self.db_path)
        try:
            query = f"""
                SELECT
                    {group_by},
                    COUNT(*) as total_calls,
                    SUM(was_successful) as successful_calls,
                    SUM(input_tokens) as input_tokens,
                    SUM(completion_tokens) as completion_tokens,
                    SUM(cost_usd) as total_cost
                FROM usage_entry
            """
            params = []
            if days is not None:
                query += " WHERE timestamp >= ?"
                params.append((datetime.now() - timedelta(days=days)).isoformat())
            query += f" GROUP BY {group_by} ORDER BY {group_by}"

            stats = {}
            for row in conn.execute(query, params).fetchall():
                stats[row[0]] = {
                    "total_calls": row[1] or 0,
                    "successful_calls": row[2] or 0,
                    "input_tokens": row[3] or 0,
                    "completion_tokens": row[4] or 0,
                    "total_cost": float(row[5] or 0),
                }
            return stats
        finally:
            conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage_entry table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_entry (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                model_name TEXT NOT NULL,
                call_type TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                completion_tokens INTEGER NOT NULL,
                cost_usd REAL NOT NULL,
                was_successful INTEGER NOT NULL DEFAULT 1
            )
        """)
        conn.commit()
    finally:
        conn.close()


def insert_usage_entry(entry: UsageEntry, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a single usage entry to the ledger.

    Args:
        entry: The usage entry to record
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute(
            f"INSERT INTO usage_entry ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            _entry_to_row(entry),
        )
        conn.commit()
    finally:
        conn.close()
