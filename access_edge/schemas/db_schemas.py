"""
Database schemas for local SQLite storage.

One database file holds the decision outbox, the archive of rejected
decisions, quarantined rows, the embedding cache and a small key/value table
for agent state (cache as_of timestamp, snapshot version).
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from .decision_schemas import DecisionRecord


# =============================================================================
# SQLite Table Definitions (as SQL strings)
# =============================================================================

# seq gives the FIFO order; enqueue_time alone can tie within a clock tick.
DECISION_QUEUE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS decision_queue (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id TEXT UNIQUE NOT NULL,
    payload TEXT NOT NULL,
    enqueue_time REAL NOT NULL,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    next_attempt_at REAL NOT NULL,
    delivered INTEGER NOT NULL DEFAULT 0,
    delivered_via TEXT NOT NULL DEFAULT 'none',
    fallback_sent_at REAL,
    last_error TEXT
);
"""

DECISION_QUEUE_INDEXES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_queue_due ON decision_queue(delivered, next_attempt_at);",
    "CREATE INDEX IF NOT EXISTS idx_queue_enqueue_time ON decision_queue(enqueue_time);",
]

DECISION_ARCHIVE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS decision_archive (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id TEXT UNIQUE NOT NULL,
    payload TEXT NOT NULL,
    attempt_count INTEGER NOT NULL,
    reason TEXT NOT NULL,
    archived_at REAL NOT NULL
);
"""

QUARANTINE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS quarantine (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_table TEXT NOT NULL,
    row_key TEXT,
    raw TEXT,
    reason TEXT NOT NULL,
    quarantined_at REAL NOT NULL
);
"""

IDENTITY_REFERENCES_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS identity_references (
    reference_id TEXT PRIMARY KEY,
    identity_id TEXT NOT NULL,
    location_id TEXT NOT NULL,
    model_version TEXT NOT NULL,
    vector BLOB NOT NULL,
    vector_dim INTEGER NOT NULL,
    quality_score REAL,
    created_at TEXT NOT NULL
);
"""

IDENTITY_REFERENCES_INDEXES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_refs_identity ON identity_references(identity_id);",
    "CREATE INDEX IF NOT EXISTS idx_refs_location ON identity_references(location_id);",
]

AGENT_STATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS agent_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

ALL_TABLES_SQL = [
    DECISION_QUEUE_TABLE_SQL,
    DECISION_ARCHIVE_TABLE_SQL,
    QUARANTINE_TABLE_SQL,
    IDENTITY_REFERENCES_TABLE_SQL,
    AGENT_STATE_TABLE_SQL,
]

ALL_INDEXES_SQL = DECISION_QUEUE_INDEXES_SQL + IDENTITY_REFERENCES_INDEXES_SQL


# =============================================================================
# Pydantic Models for DB Records
# =============================================================================

DELIVERED_VIA_NONE = "none"
DELIVERED_VIA_PRIMARY = "primary"
DELIVERED_VIA_FALLBACK = "fallback"


class QueueEntry(BaseModel):
    """
    Row of the decision_queue table.

    Retry state is explicit so a test can replay a delivery history exactly.
    Times are epoch seconds (wall clock, survives restarts).
    """
    seq: int
    record: DecisionRecord
    enqueue_time: float
    attempt_count: int = Field(0, ge=0)
    next_attempt_at: float
    delivered: bool = False
    delivered_via: str = DELIVERED_VIA_NONE
    fallback_sent_at: Optional[float] = None
    last_error: Optional[str] = None

    @property
    def event_id(self) -> str:
        return self.record.event_id

    @property
    def sent_via_fallback(self) -> bool:
        return self.fallback_sent_at is not None

    def enqueued_at(self) -> datetime:
        return datetime.fromtimestamp(self.enqueue_time, tz=timezone.utc)
