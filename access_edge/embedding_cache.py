"""
Embedding cache.

Holds the authorized identities of this device's location as an immutable
CacheSnapshot. Changes never touch the published snapshot: apply_delta()
builds the next one completely, persists it in a single SQLite transaction
and only then swaps the reference. A reader that grabbed the old snapshot
keeps a complete, consistent view.

Usage:
    cache = EmbeddingCache(store, location_id, references_per_identity=5)
    cache.load()

    refs = cache.lookup(identity_id)
    snapshot = cache.snapshot          # one consistent view for a whole match
    cache.apply_delta(delta)           # from the sync task
"""

import logging
import threading
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, List, Optional, Tuple

import numpy as np

from .errors import CacheSyncFailure, StorageCorruption
from .health import HealthMonitor
from .schemas.cache_schemas import (
    EPOCH,
    CacheDelta,
    CacheSnapshot,
    IdentityReference,
    normalize_vector,
)
from .store import LocalStore, ReferenceRow

logger = logging.getLogger(__name__)

STATE_AS_OF = "cache_as_of"
STATE_VERSION = "cache_version"


def _newest_first(ref: IdentityReference):
    return (ref.created_at, ref.reference_id)


class EmbeddingCache:
    """
    Location-scoped cache of identity references.

    Single writer (the sync task) under a lock; readers never lock.
    """

    def __init__(
        self,
        store: LocalStore,
        location_id: str,
        references_per_identity: int = 5,
        model_dimensions: Optional[Dict[str, int]] = None,
        health: Optional[HealthMonitor] = None,
    ):
        """
        Initialize cache.

        Args:
            store: Initialized local store
            location_id: The device's assigned location
            references_per_identity: N newest references kept per identity
                per model_version
            model_dimensions: Expected vector length per model_version;
                references of a listed model with another length are dropped
            health: Health monitor for counters
        """
        self.store = store
        self.location_id = location_id
        self.references_per_identity = references_per_identity
        self.model_dimensions = dict(model_dimensions or {})
        self.health = health or HealthMonitor()

        self._write_lock = threading.Lock()
        self._snapshot = CacheSnapshot.empty(location_id)

    # =========================================================================
    # Read side
    # =========================================================================

    @property
    def snapshot(self) -> CacheSnapshot:
        """The current published snapshot."""
        return self._snapshot

    @property
    def as_of(self) -> datetime:
        return self._snapshot.as_of

    def lookup(self, identity_id: str) -> Tuple[IdentityReference, ...]:
        """References for one identity, newest first, or ()."""
        return self._snapshot.entries.get(identity_id, ())

    # =========================================================================
    # Startup
    # =========================================================================

    def load(self) -> CacheSnapshot:
        """
        Rebuild the snapshot from the store.

        Rows that fail to decode are quarantined and skipped.
        """
        grouped: Dict[str, List[IdentityReference]] = {}
        loaded = 0
        for row in self.store.load_reference_rows(self.location_id):
            try:
                ref = self._decode_row(row)
            except StorageCorruption as e:
                logger.error(f"Quarantining cached reference {row['reference_id']}: {e}")
                self.health.record_error("storage_corruption", e)
                self.store.quarantine_reference(row["reference_id"], str(e))
                continue
            grouped.setdefault(ref.identity_id, []).append(ref)
            loaded += 1

        as_of = EPOCH
        as_of_raw = self.store.get_state(STATE_AS_OF)
        if as_of_raw:
            try:
                as_of = datetime.fromisoformat(as_of_raw)
            except ValueError as e:
                # Forces a full resync, which rebuilds a consistent view.
                logger.error(f"Invalid stored cache timestamp {as_of_raw!r}, resetting")
                self.health.record_error("storage_corruption", e)

        version = int(self.store.get_state(STATE_VERSION, "0") or 0)

        with self._write_lock:
            snapshot = CacheSnapshot(
                location_id=self.location_id,
                as_of=as_of,
                entries=self._freeze(grouped),
                version=version,
            )
            self._publish(snapshot)

        logger.info(
            f"Cache loaded: {len(snapshot.entries)} identities, "
            f"{loaded} references, as_of={as_of.isoformat()}"
        )
        return snapshot

    # =========================================================================
    # Write side
    # =========================================================================

    def apply_delta(self, delta: CacheDelta) -> CacheSnapshot:
        """
        Merge a delta and publish the result atomically.

        Merge rules:
            - references are keyed by reference_id; re-applying one is a no-op
            - per identity and model_version only the N newest are kept
            - revoked identities are removed entirely
            - as_of advances only if the delta is newer

        Returns:
            The published snapshot

        Raises:
            CacheSyncFailure: If the delta is for another location or cannot
                be persisted. The previous snapshot stays published.
        """
        if delta.location_id != self.location_id:
            raise CacheSyncFailure(
                f"delta for location {delta.location_id}, device is assigned {self.location_id}"
            )

        with self._write_lock:
            current = self._snapshot

            working: Dict[str, Dict[str, IdentityReference]] = {}
            if not delta.full:
                for identity_id, refs in current.entries.items():
                    working[identity_id] = {ref.reference_id: ref for ref in refs}

            skipped = 0
            for ref in delta.references:
                expected = self.model_dimensions.get(ref.model_version)
                if expected is not None and ref.dim != expected:
                    logger.warning(
                        f"Dropping reference {ref.reference_id}: {ref.dim} dims, "
                        f"{ref.model_version} expects {expected}"
                    )
                    skipped += 1
                    continue
                working.setdefault(ref.identity_id, {})[ref.reference_id] = ref

            for identity_id in delta.revoked:
                if working.pop(identity_id, None) is not None:
                    logger.info(f"Identity revoked: {identity_id}")

            grouped = {
                identity_id: list(by_id.values())
                for identity_id, by_id in working.items() if by_id
            }

            as_of = max(current.as_of, delta.as_of)
            snapshot = CacheSnapshot(
                location_id=self.location_id,
                as_of=as_of,
                entries=self._freeze(grouped),
                version=current.version + 1,
            )

            old_ids = {ref.reference_id for refs in current.entries.values() for ref in refs}
            new_refs = {ref.reference_id: ref for refs in snapshot.entries.values() for ref in refs}
            upserts = [self._encode_ref(ref) for ref_id, ref in new_refs.items()
                       if ref_id not in old_ids]
            deletes = [ref_id for ref_id in old_ids if ref_id not in new_refs]

            try:
                self.store.replace_references(
                    self.location_id,
                    upserts=upserts,
                    deletes=deletes,
                    state={
                        STATE_AS_OF: as_of.isoformat(),
                        STATE_VERSION: str(snapshot.version),
                    },
                )
            except Exception as e:
                raise CacheSyncFailure(f"failed to persist cache merge: {e}") from e

            self._publish(snapshot)

        if skipped:
            self.health.increment("cache_references_skipped", skipped)
        logger.info(
            f"Cache v{snapshot.version}: +{len(upserts)} -{len(deletes)} references, "
            f"{len(snapshot.entries)} identities, as_of={as_of.isoformat()}"
        )
        return snapshot

    # =========================================================================
    # Internal
    # =========================================================================

    def _publish(self, snapshot: CacheSnapshot) -> None:
        # Single reference assignment; readers see old or new, never a mix.
        self._snapshot = snapshot
        self.health.set_gauge("cache_identities", len(snapshot.entries))
        self.health.set_gauge("cache_references", snapshot.reference_count())
        self.health.set_gauge("cache_version", snapshot.version)

    def _retain_newest(self, refs: List[IdentityReference]) -> Tuple[IdentityReference, ...]:
        refs.sort(key=_newest_first, reverse=True)
        kept: List[IdentityReference] = []
        per_model: Dict[str, int] = {}
        for ref in refs:
            count = per_model.get(ref.model_version, 0)
            if count < self.references_per_identity:
                kept.append(ref)
                per_model[ref.model_version] = count + 1
        return tuple(kept)

    def _freeze(self, grouped: Dict[str, List[IdentityReference]]):
        frozen = {}
        for identity_id, refs in grouped.items():
            frozen[identity_id] = self._retain_newest(list(refs))
        return MappingProxyType(frozen)

    @staticmethod
    def _encode_ref(ref: IdentityReference) -> ReferenceRow:
        return (
            ref.reference_id,
            ref.identity_id,
            ref.model_version,
            np.asarray(ref.vector, dtype=np.float32).tobytes(),
            ref.dim,
            ref.quality_score,
            ref.created_at.isoformat(),
        )

    def _decode_row(self, row) -> IdentityReference:
        try:
            blob = row["vector"]
            dim = int(row["vector_dim"])
            if blob is None or len(blob) != dim * 4:
                raise StorageCorruption(
                    f"vector blob has {0 if blob is None else len(blob)} bytes, expected {dim * 4}",
                    key=row["reference_id"],
                )
            expected = self.model_dimensions.get(row["model_version"])
            if expected is not None and dim != expected:
                raise StorageCorruption(
                    f"{dim} dims, {row['model_version']} expects {expected}",
                    key=row["reference_id"],
                )
            vector = normalize_vector(np.frombuffer(blob, dtype=np.float32))
            created_at = datetime.fromisoformat(row["created_at"])
        except (ValueError, TypeError) as e:
            raise StorageCorruption(str(e), key=row["reference_id"]) from e

        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)

        return IdentityReference(
            reference_id=row["reference_id"],
            identity_id=row["identity_id"],
            vector=vector,
            model_version=row["model_version"],
            quality_score=row["quality_score"],
            created_at=created_at,
        )
