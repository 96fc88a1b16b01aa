"""
Local durable store for the edge agent.

Handles all SQLite operations:
- decision_queue: outbox of decision records pending delivery
- decision_archive: records the backend rejected, or that outlived retention
- quarantine: rows that could not be decoded
- identity_references: persisted embedding cache
- agent_state: key/value state (cache as_of, snapshot version)

Every write is a single transaction on a fresh connection with
synchronous=FULL, so a committed write survives power loss and a crash can
only lose the write in flight.
"""

import logging
import sqlite3
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import StorageInitError
from .schemas.db_schemas import (
    ALL_INDEXES_SQL,
    ALL_TABLES_SQL,
    DELIVERED_VIA_NONE,
)

logger = logging.getLogger(__name__)

# (reference_id, identity_id, model_version, vector_bytes, dim, quality_score, created_at_iso)
ReferenceRow = Tuple[str, str, str, bytes, int, Optional[float], str]


class LocalStore:
    """
    SQLite store shared by the DecisionQueue and the EmbeddingCache.

    Thread-safe: one lock serializes all access from this process.

    Usage:
        store = LocalStore("/opt/access-edge/data/agent.db")
        store.initialize()

        seq = store.insert_queue_row(event_id, payload, time.time(), time.time())
        rows = store.select_due(now=time.time(), limit=10)
    """

    def __init__(self, db_path: str, busy_timeout: float = 0.5):
        """
        Initialize store.

        Args:
            db_path: Path to SQLite database file
            busy_timeout: Seconds a write waits on a locked database
        """
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self._lock = threading.Lock()
        self._initialized = False

    def initialize(self) -> None:
        """
        Create tables and indexes.

        Safe to call multiple times.

        Raises:
            StorageInitError: If the database cannot be opened or created
        """
        with self._lock:
            if self._initialized:
                return

            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
            except (OSError, sqlite3.Error) as e:
                raise StorageInitError(f"cannot open {self.db_path}: {e}") from e

            try:
                conn.execute("PRAGMA journal_mode=WAL")
                cursor = conn.cursor()
                for table_sql in ALL_TABLES_SQL:
                    cursor.execute(table_sql)
                for index_sql in ALL_INDEXES_SQL:
                    cursor.execute(index_sql)
                conn.commit()
                result = conn.execute("PRAGMA quick_check").fetchone()
                if result is None or result[0] != "ok":
                    raise StorageInitError(f"integrity check failed for {self.db_path}: {result}")
                self._initialized = True
                logger.info(f"Store initialized: {self.db_path}")
            except sqlite3.Error as e:
                raise StorageInitError(f"cannot initialize {self.db_path}: {e}") from e
            finally:
                conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a new database connection."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA synchronous=FULL")
        return conn

    # =========================================================================
    # Decision Queue
    # =========================================================================

    def insert_queue_row(
        self,
        event_id: str,
        payload: str,
        enqueue_time: float,
        next_attempt_at: float,
    ) -> int:
        """
        Insert a new outbox row.

        This is the capture path's only write, so the wait for the store lock
        is bounded by busy_timeout like the SQLite write itself.

        Returns:
            The row's sequence number (FIFO order)

        Raises:
            sqlite3.IntegrityError: If the event_id is already queued
            sqlite3.OperationalError: If the store stayed busy past busy_timeout
        """
        if not self._lock.acquire(timeout=self.busy_timeout):
            raise sqlite3.OperationalError(f"store busy for more than {self.busy_timeout}s")
        try:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO decision_queue
                    (event_id, payload, enqueue_time, attempt_count, next_attempt_at,
                     delivered, delivered_via)
                    VALUES (?, ?, ?, 0, ?, 0, ?)
                    """,
                    (event_id, payload, enqueue_time, next_attempt_at, DELIVERED_VIA_NONE),
                )
                conn.commit()
                return cursor.lastrowid
            finally:
                conn.close()
        finally:
            self._lock.release()

    def select_due(self, now: float, limit: int) -> List[sqlite3.Row]:
        """
        Rows due for a primary delivery attempt, oldest first.

        Rows past the attempt ceiling stay here; their next_attempt_at holds
        them to the capped backoff, or to the reduced rate once they went out
        over the fallback channel.
        """
        with self._lock:
            conn = self._get_connection()
            try:
                return conn.execute(
                    """
                    SELECT * FROM decision_queue
                    WHERE delivered = 0
                      AND next_attempt_at <= ?
                    ORDER BY seq ASC
                    LIMIT ?
                    """,
                    (now, limit),
                ).fetchall()
            finally:
                conn.close()

    def select_fallback_candidates(self, limit: int) -> List[sqlite3.Row]:
        """Undelivered rows never sent over the fallback channel, oldest first."""
        with self._lock:
            conn = self._get_connection()
            try:
                return conn.execute(
                    """
                    SELECT * FROM decision_queue
                    WHERE delivered = 0
                      AND fallback_sent_at IS NULL
                    ORDER BY seq ASC
                    LIMIT ?
                    """,
                    (limit,),
                ).fetchall()
            finally:
                conn.close()

    def select_pending(self, limit: Optional[int] = None) -> List[sqlite3.Row]:
        """All undelivered rows in FIFO order."""
        with self._lock:
            conn = self._get_connection()
            try:
                query = "SELECT * FROM decision_queue WHERE delivered = 0 ORDER BY seq ASC"
                if limit is not None:
                    return conn.execute(query + " LIMIT ?", (limit,)).fetchall()
                return conn.execute(query).fetchall()
            finally:
                conn.close()

    def get_queue_row(self, event_id: str) -> Optional[sqlite3.Row]:
        with self._lock:
            conn = self._get_connection()
            try:
                return conn.execute(
                    "SELECT * FROM decision_queue WHERE event_id = ?", (event_id,)
                ).fetchone()
            finally:
                conn.close()

    def mark_delivered(self, event_id: str, via: str) -> bool:
        """
        Mark a row acknowledged.

        Returns:
            True if the row changed state (False for a repeated ack)
        """
        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    """
                    UPDATE decision_queue
                    SET delivered = 1, delivered_via = ?, last_error = NULL
                    WHERE event_id = ? AND delivered = 0
                    """,
                    (via, event_id),
                )
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

    def record_failure(
        self,
        event_id: str,
        attempt_count: int,
        next_attempt_at: float,
        error: Optional[str],
    ) -> bool:
        """Persist retry state after a failed delivery attempt."""
        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    """
                    UPDATE decision_queue
                    SET attempt_count = ?, next_attempt_at = ?, last_error = ?
                    WHERE event_id = ? AND delivered = 0
                    """,
                    (attempt_count, next_attempt_at, error, event_id),
                )
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

    def mark_fallback_sent(
        self,
        updates: Sequence[Tuple[str, float]],
        sent_at: float,
    ) -> int:
        """
        Tag rows as sent via fallback and push back their primary retry.

        Args:
            updates: (event_id, next_attempt_at) pairs
            sent_at: When the payloads were handed to the uplink

        Returns:
            Number of rows updated
        """
        if not updates:
            return 0

        with self._lock:
            conn = self._get_connection()
            try:
                count = 0
                for event_id, next_attempt_at in updates:
                    cursor = conn.execute(
                        """
                        UPDATE decision_queue
                        SET fallback_sent_at = ?, next_attempt_at = MAX(next_attempt_at, ?)
                        WHERE event_id = ? AND delivered = 0
                        """,
                        (sent_at, next_attempt_at, event_id),
                    )
                    count += cursor.rowcount
                conn.commit()
                return count
            finally:
                conn.close()

    def archive_queue_row(self, event_id: str, reason: str) -> bool:
        """Move a row to decision_archive in one transaction."""
        now = time.time()
        with self._lock:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM decision_queue WHERE event_id = ?", (event_id,)
                ).fetchone()
                if row is None:
                    return False
                conn.execute(
                    """
                    INSERT OR REPLACE INTO decision_archive
                    (event_id, payload, attempt_count, reason, archived_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (event_id, row["payload"], row["attempt_count"], reason, now),
                )
                conn.execute("DELETE FROM decision_queue WHERE event_id = ?", (event_id,))
                conn.commit()
                return True
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def quarantine_queue_row(self, seq: int, raw: Optional[str], reason: str) -> None:
        """Move an undecodable outbox row out of the way."""
        now = time.time()
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    """
                    INSERT INTO quarantine (source_table, row_key, raw, reason, quarantined_at)
                    VALUES ('decision_queue', ?, ?, ?, ?)
                    """,
                    (str(seq), raw, reason, now),
                )
                conn.execute("DELETE FROM decision_queue WHERE seq = ?", (seq,))
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def purge_queue(self, expire_before: float) -> Tuple[int, int]:
        """
        Housekeeping for the outbox.

        Delivered rows are deleted. Undelivered rows enqueued before
        expire_before are moved to the archive with reason
        'retention_expired'.

        Returns:
            (delivered_purged, expired_archived)
        """
        now = time.time()
        with self._lock:
            conn = self._get_connection()
            try:
                delivered = conn.execute(
                    "DELETE FROM decision_queue WHERE delivered = 1"
                ).rowcount
                conn.execute(
                    """
                    INSERT OR REPLACE INTO decision_archive
                    (event_id, payload, attempt_count, reason, archived_at)
                    SELECT event_id, payload, attempt_count, 'retention_expired', ?
                    FROM decision_queue
                    WHERE delivered = 0 AND enqueue_time < ?
                    """,
                    (now, expire_before),
                )
                expired = conn.execute(
                    "DELETE FROM decision_queue WHERE delivered = 0 AND enqueue_time < ?",
                    (expire_before,),
                ).rowcount
                conn.commit()
                return delivered, expired
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def get_queue_counts(self) -> Dict[str, int]:
        """Counts for the health surface."""
        with self._lock:
            conn = self._get_connection()
            try:
                pending = conn.execute(
                    "SELECT COUNT(*) FROM decision_queue WHERE delivered = 0"
                ).fetchone()[0]
                via_fallback = conn.execute(
                    "SELECT COUNT(*) FROM decision_queue "
                    "WHERE delivered = 0 AND fallback_sent_at IS NOT NULL"
                ).fetchone()[0]
                archived = conn.execute("SELECT COUNT(*) FROM decision_archive").fetchone()[0]
                quarantined = conn.execute("SELECT COUNT(*) FROM quarantine").fetchone()[0]
                return {
                    "pending": pending,
                    "pending_sent_via_fallback": via_fallback,
                    "archived": archived,
                    "quarantined": quarantined,
                }
            finally:
                conn.close()

    def get_archived(self, event_id: str) -> Optional[sqlite3.Row]:
        with self._lock:
            conn = self._get_connection()
            try:
                return conn.execute(
                    "SELECT * FROM decision_archive WHERE event_id = ?", (event_id,)
                ).fetchone()
            finally:
                conn.close()

    # =========================================================================
    # Embedding Cache
    # =========================================================================

    def load_reference_rows(self, location_id: str) -> List[sqlite3.Row]:
        """All persisted references for a location."""
        with self._lock:
            conn = self._get_connection()
            try:
                return conn.execute(
                    "SELECT * FROM identity_references WHERE location_id = ? "
                    "ORDER BY identity_id, created_at DESC",
                    (location_id,),
                ).fetchall()
            finally:
                conn.close()

    def replace_references(
        self,
        location_id: str,
        upserts: Iterable[ReferenceRow],
        deletes: Iterable[str],
        state: Dict[str, str],
    ) -> None:
        """
        Apply a cache merge in a single transaction.

        Rows of any other location are dropped in the same transaction, so a
        reassigned device never matches against its previous site.

        Args:
            location_id: The device's assigned location
            upserts: References to insert
            deletes: reference_ids to remove
            state: agent_state keys to write alongside
        """
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute(
                    "DELETE FROM identity_references WHERE location_id != ?", (location_id,)
                )
                conn.executemany(
                    "DELETE FROM identity_references WHERE reference_id = ?",
                    [(reference_id,) for reference_id in deletes],
                )
                conn.executemany(
                    """
                    INSERT OR REPLACE INTO identity_references
                    (reference_id, identity_id, location_id, model_version, vector,
                     vector_dim, quality_score, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (ref_id, identity_id, location_id, model_version, blob, dim, quality, created)
                        for ref_id, identity_id, model_version, blob, dim, quality, created in upserts
                    ],
                )
                conn.executemany(
                    """
                    INSERT INTO agent_state (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    [(key, value, now) for key, value in state.items()],
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def quarantine_reference(self, reference_id: str, reason: str) -> None:
        """Move an undecodable reference out of the cache table."""
        now = time.time()
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    """
                    INSERT INTO quarantine (source_table, row_key, raw, reason, quarantined_at)
                    VALUES ('identity_references', ?, NULL, ?, ?)
                    """,
                    (reference_id, reason, now),
                )
                conn.execute(
                    "DELETE FROM identity_references WHERE reference_id = ?", (reference_id,)
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    # =========================================================================
    # Agent State
    # =========================================================================

    def set_state(self, key: str, value: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    """
                    INSERT INTO agent_state (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, now),
                )
                conn.commit()
            finally:
                conn.close()

    def get_state(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT value FROM agent_state WHERE key = ?", (key,)
                ).fetchone()
                return row["value"] if row else default
            finally:
                conn.close()
