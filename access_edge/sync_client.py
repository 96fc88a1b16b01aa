"""
Primary transport: GraphQL over HTTP.

Pulls incremental cache deltas, pushes queued decision records and sends
the device heartbeat. Every call carries a bearer token from the
CredentialManager and a timeout.

Failure classification:
    timeout, connection error, HTTP 429/5xx      -> DeliveryFailure (retryable)
    HTTP 401/403, GraphQL invalid-jwt            -> CredentialExpired (retryable,
                                                    token dropped first)
    other HTTP 4xx, GraphQL validation errors    -> DeliveryRejected (terminal)

Location scope of the delta query is enforced by the backend's row
permissions through the claims in the device token.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests
from pydantic import ValidationError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import SyncConfig
from .credentials import CredentialManager
from .decision_queue import DecisionQueue
from .embedding_cache import EmbeddingCache
from .errors import (
    CacheSyncFailure,
    CredentialExpired,
    CredentialRevoked,
    DeliveryFailure,
    DeliveryRejected,
)
from .health import HealthMonitor
from .logging_config import DecisionLogger
from .schemas.cache_schemas import EPOCH, CacheDelta, CacheSnapshot, EmbeddingRow, RevokedRow
from .schemas.db_schemas import DELIVERED_VIA_PRIMARY, QueueEntry
from .schemas.decision_schemas import DecisionRecord

logger = logging.getLogger(__name__)


CACHE_DELTA_QUERY = """
query CacheDelta($since: timestamptz!, $limit: Int!, $offset: Int!) {
  face_embeddings(
    where: {
      _or: [{created_at: {_gte: $since}}, {user: {updated_at: {_gte: $since}}}]
      user: {status: {_eq: "active"}}
    }
    order_by: [{created_at: asc}, {id: asc}]
    limit: $limit
    offset: $offset
  ) {
    id
    user_id
    embedding
    model_version
    quality_score
    created_at
  }
}
"""

REVOKED_IDENTITIES_QUERY = """
query RevokedIdentities($since: timestamptz!) {
  users(where: {updated_at: {_gte: $since}, status: {_neq: "active"}}) {
    id
    updated_at
  }
}
"""

INSERT_AUTH_EVENTS_MUTATION = """
mutation InsertAuthEvents($objects: [auth_events_insert_input!]!) {
  insert_auth_events(
    objects: $objects
    on_conflict: {constraint: auth_events_pkey, update_columns: []}
  ) {
    affected_rows
    returning { id }
  }
}
"""

HEARTBEAT_MUTATION = """
mutation DeviceHeartbeat($id: uuid!, $set: devices_set_input!, $metadata: jsonb!) {
  update_devices_by_pk(pk_columns: {id: $id}, _set: $set, _append: {metadata: $metadata}) {
    id
  }
}
"""

CREDENTIAL_ERROR_CODES = {"invalid-jwt", "invalid-headers", "jwt-invalid-claims"}
REJECTION_ERROR_CODES = {
    "validation-failed", "constraint-violation", "data-exception",
    "parse-failed", "not-supported", "permission-error", "access-denied",
    "bad-request", "invalid-input",
}


@dataclass
class DeliveryReceipt:
    """Backend acknowledgment of a batch."""
    acknowledged: List[str]
    inserted: List[str] = field(default_factory=list)

    @property
    def duplicates(self) -> List[str]:
        inserted = set(self.inserted)
        return [event_id for event_id in self.acknowledged if event_id not in inserted]


class OutageTracker:
    """
    Tracks how long the primary transport has been failing.

    The outage starts at the first failure after a success and ends at the
    next success.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.failure_since: Optional[float] = None
        self.consecutive_failures = 0
        self.last_success_at: Optional[float] = None

    def record_success(self) -> None:
        if self.failure_since is not None:
            logger.info(
                f"Primary transport recovered after {self.consecutive_failures} failures"
            )
        self.failure_since = None
        self.consecutive_failures = 0
        self.last_success_at = self.clock()

    def record_failure(self) -> None:
        if self.failure_since is None:
            self.failure_since = self.clock()
        self.consecutive_failures += 1

    def outage_seconds(self, now: Optional[float] = None) -> float:
        if self.failure_since is None:
            return 0.0
        now = self.clock() if now is None else now
        return max(0.0, now - self.failure_since)

    def in_outage(self, threshold: float, now: Optional[float] = None) -> bool:
        """True once failures have lasted strictly longer than threshold."""
        if self.failure_since is None:
            return False
        return self.outage_seconds(now) > threshold


class SyncClient:
    """
    Cache pull, decision push and heartbeat over the primary transport.

    Usage:
        client = SyncClient(config.sync, device_id, location_id, credentials)
        client.sync_cache(cache)
        client.deliver_pending(queue)
        client.close()
    """

    def __init__(
        self,
        config: SyncConfig,
        device_id: str,
        location_id: str,
        credentials: CredentialManager,
        session: Optional[requests.Session] = None,
        health: Optional[HealthMonitor] = None,
        outage: Optional[OutageTracker] = None,
        decision_logger: Optional[DecisionLogger] = None,
    ):
        self.config = config
        self.device_id = device_id
        self.location_id = location_id
        self.credentials = credentials
        self.session = session or create_session(config, device_id)
        self.health = health or HealthMonitor()
        self.outage = outage or OutageTracker()
        self.decision_logger = decision_logger or DecisionLogger(device_id)

    # =========================================================================
    # Transport
    # =========================================================================

    def execute(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run one GraphQL operation.

        Returns:
            The response's data object

        Raises:
            DeliveryFailure, CredentialExpired, CredentialRevoked, DeliveryRejected
        """
        token = self.credentials.get_token()
        try:
            response = self.session.post(
                self.config.graphql_url,
                json={"query": query, "variables": variables},
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.config.timeout_seconds,
                verify=self.config.verify_ssl,
            )
        except requests.exceptions.RequestException as e:
            raise DeliveryFailure(f"request failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            self.credentials.invalidate()
            raise CredentialExpired(f"backend refused token with HTTP {status}")
        if status == 429 or status >= 500:
            raise DeliveryFailure(f"backend returned HTTP {status}")
        if status >= 400:
            raise DeliveryRejected(f"backend returned HTTP {status}: {response.text[:200]}")

        try:
            body = response.json()
        except ValueError as e:
            raise DeliveryFailure(f"unparseable response body: {e}") from e

        errors = body.get("errors") if isinstance(body, dict) else None
        if errors:
            self._raise_graphql_error(errors)

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise DeliveryFailure("response has no data object")
        return data

    def _raise_graphql_error(self, errors: List[Dict[str, Any]]) -> None:
        first = errors[0] if isinstance(errors[0], dict) else {"message": str(errors[0])}
        code = (first.get("extensions") or {}).get("code", "")
        message = first.get("message", "unknown GraphQL error")

        if code in CREDENTIAL_ERROR_CODES or "JWTExpired" in message:
            self.credentials.invalidate()
            raise CredentialExpired(f"{code}: {message}")
        if code in REJECTION_ERROR_CODES:
            raise DeliveryRejected(f"{code}: {message}")
        raise DeliveryFailure(f"{code or 'error'}: {message}")

    def _track(self, error: BaseException) -> None:
        """Outage bookkeeping for a failed call."""
        if isinstance(error, (DeliveryFailure, CredentialExpired, CredentialRevoked)):
            self.outage.record_failure()
            self.health.set_gauge("primary_outage_seconds", round(self.outage.outage_seconds(), 1))

    def _succeeded(self) -> None:
        self.outage.record_success()
        self.health.set_gauge("primary_outage_seconds", 0.0)

    # =========================================================================
    # Cache pull
    # =========================================================================

    def fetch_delta(self, since: datetime, full: bool = False) -> CacheDelta:
        """
        Collect every reference created since `since`, every reference of an
        active identity updated since then, and every identity revoked since
        then.

        Only embedding created_at values advance as_of. User changes are
        re-read while they stay newer than the watermark; merging them again
        is a no-op.

        Malformed rows are skipped and counted.
        """
        references = []
        seen = set()
        latest = since
        malformed = 0
        offset = 0
        page_size = self.config.sync_page_size
        since_iso = since.isoformat()

        while True:
            data = self.execute(CACHE_DELTA_QUERY, {
                "since": since_iso,
                "limit": page_size,
                "offset": offset,
            })
            rows = data.get("face_embeddings") or []
            for raw in rows:
                try:
                    ref = EmbeddingRow.model_validate(raw).to_reference()
                except (ValidationError, ValueError, TypeError) as e:
                    malformed += 1
                    row_id = raw.get("id") if isinstance(raw, dict) else None
                    logger.warning(f"Skipping malformed embedding row {row_id}: {e}")
                    continue
                if ref.reference_id in seen:
                    continue
                seen.add(ref.reference_id)
                references.append(ref)
                latest = max(latest, ref.created_at)

            if len(rows) < page_size:
                break
            offset += page_size

        revoked = []
        data = self.execute(REVOKED_IDENTITIES_QUERY, {"since": since_iso})
        for raw in data.get("users") or []:
            try:
                row = RevokedRow.model_validate(raw)
            except ValidationError as e:
                malformed += 1
                logger.warning(f"Skipping malformed revocation row: {e}")
                continue
            revoked.append(row.id)

        if malformed:
            self.health.increment("cache_rows_malformed", malformed)

        return CacheDelta(
            location_id=self.location_id,
            as_of=latest,
            references=tuple(references),
            revoked=tuple(revoked),
            full=full,
        )

    def sync_cache(self, cache: EmbeddingCache, full: bool = False) -> CacheSnapshot:
        """
        Pull and apply one incremental delta.

        A cache that never synced does a full pull.

        Raises:
            CacheSyncFailure: On any failure; the cache is unchanged
            CredentialRevoked: If the device must be re-provisioned
        """
        full = full or cache.as_of <= EPOCH
        since = EPOCH if full else cache.as_of
        try:
            delta = self.fetch_delta(since, full=full)
        except CredentialRevoked as e:
            self._track(e)
            raise
        except (DeliveryFailure, CredentialExpired, DeliveryRejected) as e:
            self._track(e)
            self.health.record_error("cache_sync_failures", e)
            raise CacheSyncFailure(f"delta fetch failed: {e}") from e

        self._succeeded()
        try:
            snapshot = cache.apply_delta(delta)
        except CacheSyncFailure as e:
            self.health.record_error("cache_sync_failures", e)
            raise

        self.health.increment("cache_syncs")
        self.health.set_gauge("cache_as_of", snapshot.as_of.isoformat())
        return snapshot

    # =========================================================================
    # Decision push
    # =========================================================================

    def send_decisions(self, records: Sequence[DecisionRecord]) -> DeliveryReceipt:
        """
        Insert a batch of decision records.

        The insert ignores conflicts on the event id, so a record that was
        delivered before counts as acknowledged.
        """
        data = self.execute(INSERT_AUTH_EVENTS_MUTATION, {
            "objects": [record.to_mutation_object() for record in records],
        })
        result = data.get("insert_auth_events")
        if not isinstance(result, dict):
            raise DeliveryFailure("insert_auth_events returned no result")
        inserted = [row.get("id") for row in result.get("returning") or [] if isinstance(row, dict)]
        return DeliveryReceipt(
            acknowledged=[record.event_id for record in records],
            inserted=inserted,
        )

    def deliver_pending(self, queue: DecisionQueue, batch_size: Optional[int] = None) -> int:
        """
        One delivery round over entries that are due.

        Returns:
            Number of entries acknowledged

        Raises:
            CredentialRevoked: If the device must be re-provisioned
        """
        entries = queue.drain(batch_size or self.config.delivery_batch_size)
        if not entries:
            return 0

        try:
            return self._deliver_batch(queue, entries)
        except DeliveryRejected as e:
            if len(entries) == 1:
                self._reject(queue, entries[0], e)
                return 0
            logger.warning(f"Batch of {len(entries)} rejected ({e}); isolating records")

        acknowledged = 0
        for entry in entries:
            try:
                acknowledged += self._deliver_batch(queue, [entry])
            except DeliveryRejected as e:
                self._reject(queue, entry, e)
        return acknowledged

    def _deliver_batch(self, queue: DecisionQueue, entries: List[QueueEntry]) -> int:
        for entry in entries:
            self.decision_logger.log_sent(
                entry.event_id, self.config.graphql_url, entry.attempt_count + 1
            )

        start = time.time()
        try:
            receipt = self.send_decisions([entry.record for entry in entries])
        except DeliveryRejected:
            # Reaching the backend at all means the transport is up.
            self._succeeded()
            raise
        except (DeliveryFailure, CredentialExpired, CredentialRevoked) as e:
            self._track(e)
            self.health.record_error("delivery_failures", e)
            for entry in entries:
                updated = queue.fail(entry.event_id, str(e))
                if updated is not None:
                    self.decision_logger.log_failed(
                        entry.event_id, str(e), updated.attempt_count, updated.next_attempt_at
                    )
            if isinstance(e, CredentialRevoked):
                raise
            return 0

        self._succeeded()
        response_ms = (time.time() - start) * 1000
        for event_id in receipt.acknowledged:
            if queue.ack(event_id, via=DELIVERED_VIA_PRIMARY):
                self.decision_logger.log_acknowledged(event_id, DELIVERED_VIA_PRIMARY, response_ms)
        if receipt.duplicates:
            logger.info(f"{len(receipt.duplicates)} decisions were already stored by the backend")
        self.health.increment("decisions_delivered", len(receipt.acknowledged))
        return len(receipt.acknowledged)

    def _reject(self, queue: DecisionQueue, entry: QueueEntry, error: DeliveryRejected) -> None:
        self.decision_logger.log_rejected(entry.event_id, str(error))
        self.health.record_error("delivery_rejections", error)
        queue.archive(entry.event_id, reason=str(error)[:500])

    # =========================================================================
    # Heartbeat
    # =========================================================================

    def send_heartbeat(self, health_snapshot: Dict[str, Any]) -> bool:
        """
        Report liveness and health to the devices table.

        Returns:
            True if the backend accepted the heartbeat
        """
        now_iso = datetime.now(timezone.utc).isoformat()
        fields: Dict[str, Any] = {"last_seen_at": now_iso}
        if self.config.firmware_version:
            fields["firmware_version"] = self.config.firmware_version

        try:
            self.execute(HEARTBEAT_MUTATION, {
                "id": self.device_id,
                "set": fields,
                "metadata": {"health": health_snapshot, "reported_at": now_iso},
            })
        except CredentialRevoked:
            raise
        except (DeliveryFailure, CredentialExpired, DeliveryRejected) as e:
            self._track(e)
            logger.warning(f"Heartbeat failed: {e}")
            self.health.record_error("heartbeat_failures", e)
            return False

        self._succeeded()
        return True

    def close(self) -> None:
        if self.session:
            self.session.close()


def create_session(config: SyncConfig, device_id: str) -> requests.Session:
    """Create requests session with retry logic."""
    session = requests.Session()

    retry_strategy = Retry(
        total=config.max_retries,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["POST"],
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    session.headers.update({
        "Content-Type": "application/json",
        "X-Device-ID": device_id,
    })
    return session
