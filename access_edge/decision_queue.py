"""
Durable decision outbox.

Decision records are written to SQLite before enqueue() returns and leave
the queue only after the backend acknowledged them, or after the retention
window. Delivery order is FIFO by enqueue order. Each entry carries its own
retry state (attempt_count, next_attempt_at, fallback_sent_at), so a retry
history can be replayed exactly in tests.

Usage:
    queue = DecisionQueue(store, config.queue, health=health)
    event_id = queue.enqueue(record)

    for entry in queue.drain(max_batch=10):
        try:
            send(entry.record)
            queue.ack(entry.event_id)
        except DeliveryFailure as e:
            queue.fail(entry.event_id, str(e))
"""

import logging
import random
import sqlite3
import time
from typing import Callable, List, Optional

from pydantic import ValidationError

from .config import QueueConfig
from .errors import StorageCorruption
from .health import HealthMonitor
from .schemas.db_schemas import DELIVERED_VIA_PRIMARY, QueueEntry
from .schemas.decision_schemas import DecisionRecord
from .store import LocalStore

logger = logging.getLogger(__name__)


def compute_backoff(
    attempt_count: int,
    base: float,
    maximum: float,
    jitter: float = 0.0,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Exponential backoff with proportional jitter, capped at maximum.

    The delay for attempt n lies in [base * 2**(n-1), base * 2**(n-1) * (1 + jitter)]
    before the cap. With jitter <= 1 consecutive ranges never overlap, so
    delays never shrink as attempts grow.

    Args:
        attempt_count: Failed attempts so far (>= 1)
        base: Delay after the first failure
        maximum: Upper bound of any delay
        jitter: Fraction of the delay added at random (0.0 - 1.0)
        rng: Random source, injectable for deterministic tests

    Returns:
        Delay in seconds
    """
    exponent = max(attempt_count - 1, 0)
    # Cap the exponent so 2**n cannot overflow a float on long outages.
    delay = base * (2 ** min(exponent, 62))
    if jitter > 0:
        delay *= 1.0 + jitter * (rng or random).random()
    return min(delay, maximum)


class DecisionQueue:
    """
    At-least-once outbox of decision records.

    enqueue() is the only call on the capture path; it is one INSERT with a
    bounded busy timeout. drain/ack/fail are called by the delivery task and
    the fallback task.
    """

    def __init__(
        self,
        store: LocalStore,
        config: QueueConfig,
        health: Optional[HealthMonitor] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        fallback_retry_multiplier: float = 1.0,
    ):
        """
        Initialize decision queue.

        Args:
            store: Initialized local store
            config: Queue settings (backoff, attempt ceiling, retention)
            health: Health monitor for counters
            clock: Wall clock returning epoch seconds
            rng: Random source for backoff jitter
            fallback_retry_multiplier: Primary retry slowdown for entries
                already sent via fallback
        """
        self.store = store
        self.config = config
        self.health = health or HealthMonitor()
        self.clock = clock
        self.rng = rng or random.Random()
        self._fallback_multiplier = max(1.0, fallback_retry_multiplier)

    # =========================================================================
    # Producer side
    # =========================================================================

    def enqueue(self, record: DecisionRecord) -> str:
        """
        Durably store a decision record.

        Returns:
            The record's event_id

        Raises:
            sqlite3.Error: If the write could not be committed in time
        """
        now = self.clock()
        try:
            self.store.insert_queue_row(
                event_id=record.event_id,
                payload=record.model_dump_json(),
                enqueue_time=now,
                next_attempt_at=now,
            )
        except sqlite3.IntegrityError:
            # Same event_id already durable; enqueue is idempotent.
            logger.warning(f"Decision already queued: {record.event_id}")
            return record.event_id

        self.health.increment("decisions_enqueued")
        return record.event_id

    # =========================================================================
    # Consumer side
    # =========================================================================

    def drain(self, max_batch: int) -> List[QueueEntry]:
        """
        Entries due for a primary delivery attempt, oldest first.

        Entries past the attempt ceiling are included at the capped backoff
        rate. Rows that fail to decode are quarantined and skipped.
        """
        rows = self.store.select_due(now=self.clock(), limit=max_batch)
        return self._decode_rows(rows)

    def fallback_candidates(self, limit: int) -> List[QueueEntry]:
        """
        Undelivered entries not yet sent via fallback, oldest first.

        Only the fallback transport calls this, and only while the primary
        is in an outage.
        """
        return self._decode_rows(self.store.select_fallback_candidates(limit=limit))

    def pending(self, limit: Optional[int] = None) -> List[QueueEntry]:
        """All undelivered entries in FIFO order regardless of schedule."""
        return self._decode_rows(self.store.select_pending(limit))

    def get(self, event_id: str) -> Optional[QueueEntry]:
        row = self.store.get_queue_row(event_id)
        if row is None:
            return None
        entries = self._decode_rows([row])
        return entries[0] if entries else None

    def ack(self, event_id: str, via: str = DELIVERED_VIA_PRIMARY) -> bool:
        """
        Record a backend acknowledgment. Idempotent.

        Returns:
            True if this call changed the entry's state
        """
        changed = self.store.mark_delivered(event_id, via)
        if changed:
            self.health.increment("decisions_acknowledged")
        return changed

    def fail(self, event_id: str, error: Optional[str] = None) -> Optional[QueueEntry]:
        """
        Record a failed delivery attempt and schedule the next one.

        Entries already sent via fallback retry at a reduced rate. Entries
        past the attempt ceiling keep retrying at the capped delay.

        Returns:
            The updated entry, or None if it no longer exists
        """
        entry = self.get(event_id)
        if entry is None or entry.delivered:
            return None

        now = self.clock()
        attempt_count = entry.attempt_count + 1
        delay = self._retry_delay(attempt_count, entry.sent_via_fallback, self.config.backoff_jitter)
        next_attempt_at = max(entry.next_attempt_at, now + delay)

        self.store.record_failure(event_id, attempt_count, next_attempt_at, error)
        self.health.increment("delivery_attempts_failed")

        if attempt_count == self.config.max_attempts:
            self.health.increment("decisions_past_ceiling")
            logger.warning(
                f"Decision {event_id} reached {attempt_count} attempts; "
                f"retrying every {self.config.backoff_max_seconds:.0f}s at most, "
                f"fallback takes it during an outage"
            )

        return entry.model_copy(update={
            "attempt_count": attempt_count,
            "next_attempt_at": next_attempt_at,
            "last_error": error,
        })

    def archive(self, event_id: str, reason: str) -> bool:
        """Remove a terminally rejected entry, keeping it in the archive."""
        archived = self.store.archive_queue_row(event_id, reason)
        if archived:
            self.health.increment("decisions_archived")
        return archived

    def mark_fallback_sent(self, entries: List[QueueEntry]) -> int:
        """
        Tag entries as sent via fallback.

        Their next primary attempt moves out to the reduced retry rate so the
        primary does not resend them at full speed once it recovers.
        """
        now = self.clock()
        updates = []
        for entry in entries:
            delay = self._retry_delay(max(entry.attempt_count, 1), True, jitter=0.0)
            updates.append((entry.event_id, now + delay))
        return self.store.mark_fallback_sent(updates, sent_at=now)

    def purge(self) -> None:
        """Drop delivered entries and archive entries past retention."""
        cutoff = self.clock() - self.config.retention_days * 86400.0
        delivered, expired = self.store.purge_queue(expire_before=cutoff)
        if delivered:
            logger.debug(f"Purged {delivered} delivered decisions")
        if expired:
            logger.warning(f"Archived {expired} undelivered decisions past retention")
            self.health.increment("decisions_expired", expired)

    def depth(self) -> int:
        return self.store.get_queue_counts()["pending"]

    # =========================================================================
    # Internal
    # =========================================================================

    def _retry_delay(self, attempt_count: int, sent_via_fallback: bool, jitter: float) -> float:
        delay = compute_backoff(
            attempt_count,
            base=self.config.backoff_base_seconds,
            maximum=self.config.backoff_max_seconds,
            jitter=jitter,
            rng=self.rng,
        )
        if sent_via_fallback:
            # The slowdown still respects the configured maximum interval.
            delay = min(delay * self._fallback_multiplier, self.config.backoff_max_seconds)
        return delay

    def _decode_rows(self, rows) -> List[QueueEntry]:
        entries = []
        for row in rows:
            try:
                entries.append(self._decode_row(row))
            except StorageCorruption as e:
                logger.error(f"Quarantining outbox row {row['seq']}: {e}")
                self.health.record_error("storage_corruption", e)
                self.store.quarantine_queue_row(row["seq"], row["payload"], str(e))
        return entries

    @staticmethod
    def _decode_row(row) -> QueueEntry:
        try:
            record = DecisionRecord.model_validate_json(row["payload"])
        except (ValidationError, ValueError, TypeError) as e:
            raise StorageCorruption(f"undecodable payload: {e}", key=row["event_id"]) from e

        if record.event_id != row["event_id"]:
            raise StorageCorruption(
                f"payload event_id {record.event_id} does not match row", key=row["event_id"]
            )

        return QueueEntry(
            seq=row["seq"],
            record=record,
            enqueue_time=row["enqueue_time"],
            attempt_count=row["attempt_count"],
            next_attempt_at=row["next_attempt_at"],
            delivered=bool(row["delivered"]),
            delivered_via=row["delivered_via"],
            fallback_sent_at=row["fallback_sent_at"],
            last_error=row["last_error"],
        )
