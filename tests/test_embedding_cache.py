import sqlite3
import threading
from datetime import timedelta

import pytest

from access_edge.embedding_cache import STATE_AS_OF, EmbeddingCache
from access_edge.errors import CacheSyncFailure
from access_edge.schemas.cache_schemas import EPOCH, CacheDelta
from access_edge.store import LocalStore

from conftest import DIM, LOCATION_ID, MODEL, T0, make_ref


def delta(refs=(), revoked=(), minutes=0, full=False, location_id=LOCATION_ID):
    return CacheDelta(
        location_id=location_id,
        as_of=T0 + timedelta(minutes=minutes),
        references=tuple(refs),
        revoked=tuple(revoked),
        full=full,
    )


@pytest.fixture
def cache(store):
    c = EmbeddingCache(store, LOCATION_ID, references_per_identity=2, model_dimensions={MODEL: DIM})
    c.load()
    return c


def test_empty_cache_starts_at_epoch(cache):
    assert cache.as_of == EPOCH
    assert len(cache.snapshot.entries) == 0
    assert cache.lookup("nobody") == ()


def test_delta_merges_and_lookup_is_newest_first(cache):
    cache.apply_delta(delta([make_ref("alice", minutes=1), make_ref("bob", axis=1)], minutes=1))
    cache.apply_delta(delta([make_ref("alice", axis=2, minutes=5)], minutes=5))

    refs = cache.lookup("alice")
    assert [r.reference_id for r in refs] == ["alice-ref-5", "alice-ref-1"]
    assert len(cache.snapshot.entries) == 2
    assert cache.snapshot.version == 2


def test_only_n_newest_references_kept(cache):
    cache.apply_delta(delta([make_ref("alice", minutes=m) for m in (1, 2, 3, 4)], minutes=4))
    assert [r.reference_id for r in cache.lookup("alice")] == ["alice-ref-4", "alice-ref-3"]


def test_retention_is_per_model_version(cache):
    refs = [make_ref("alice", minutes=m) for m in (1, 2, 3)]
    refs.append(make_ref("alice", minutes=9, model="other-model", reference_id="alice-other"))
    cache.apply_delta(delta(refs, minutes=9))
    ids = {r.reference_id for r in cache.lookup("alice")}
    assert ids == {"alice-ref-3", "alice-ref-2", "alice-other"}


def test_reapplying_a_delta_is_a_noop(cache):
    d = delta([make_ref("alice", minutes=1)], minutes=1)
    cache.apply_delta(d)
    cache.apply_delta(d)
    assert [r.reference_id for r in cache.lookup("alice")] == ["alice-ref-1"]


def test_revocation_removes_identity(cache):
    cache.apply_delta(delta([make_ref("alice"), make_ref("bob", axis=1)], minutes=1))
    cache.apply_delta(delta(revoked=["alice"], minutes=2))
    assert cache.lookup("alice") == ()
    assert len(cache.lookup("bob")) == 1


def test_as_of_never_moves_backwards(cache):
    cache.apply_delta(delta([make_ref("alice")], minutes=10))
    cache.apply_delta(delta([make_ref("bob", axis=1)], minutes=3))
    assert cache.as_of == T0 + timedelta(minutes=10)
    assert len(cache.lookup("bob")) == 1


def test_full_delta_replaces_snapshot(cache):
    cache.apply_delta(delta([make_ref("alice"), make_ref("bob", axis=1)], minutes=1))
    cache.apply_delta(delta([make_ref("carol", axis=2)], minutes=2, full=True))
    assert set(cache.snapshot.entries) == {"carol"}


def test_wrong_dimension_reference_skipped(cache):
    cache.apply_delta(delta([make_ref("alice", dim=4), make_ref("bob", axis=1)], minutes=1))
    assert cache.lookup("alice") == ()
    assert cache.health.get("cache_references_skipped") == 1


def test_delta_for_other_location_rejected(cache):
    cache.apply_delta(delta([make_ref("alice")], minutes=1))
    with pytest.raises(CacheSyncFailure):
        cache.apply_delta(delta([make_ref("mallory")], location_id="elsewhere"))
    assert set(cache.snapshot.entries) == {"alice"}


def test_persist_failure_keeps_old_snapshot(cache, monkeypatch):
    cache.apply_delta(delta([make_ref("alice")], minutes=1))
    before = cache.snapshot

    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(cache.store, "replace_references", broken)
    with pytest.raises(CacheSyncFailure):
        cache.apply_delta(delta([make_ref("bob", axis=1)], minutes=2))
    assert cache.snapshot is before


def test_reload_from_store(store, cache):
    cache.apply_delta(delta([make_ref("alice", minutes=1), make_ref("bob", axis=1)], minutes=7))
    cache.apply_delta(delta(revoked=["bob"], minutes=8))

    reopened = LocalStore(str(store.db_path))
    reopened.initialize()
    restored = EmbeddingCache(reopened, LOCATION_ID, references_per_identity=2)
    snapshot = restored.load()

    assert set(snapshot.entries) == {"alice"}
    assert snapshot.as_of == T0 + timedelta(minutes=8)
    assert snapshot.version == 2
    ref = restored.lookup("alice")[0]
    assert ref.vector.tolist() == make_ref("alice").vector.tolist()


def test_corrupt_reference_row_is_quarantined(store, cache):
    cache.apply_delta(delta([make_ref("alice")], minutes=1))
    conn = sqlite3.connect(str(store.db_path))
    conn.execute(
        "INSERT INTO identity_references VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        ("bad-ref", "eve", LOCATION_ID, MODEL, b"\x00\x01\x02", DIM, 0.5, T0.isoformat()),
    )
    conn.commit()
    conn.close()

    restored = EmbeddingCache(store, LOCATION_ID)
    restored.load()

    assert set(restored.snapshot.entries) == {"alice"}
    assert store.get_queue_counts()["quarantined"] == 1
    assert restored.health.get("storage_corruption") == 1


def test_invalid_stored_timestamp_resets_to_epoch(store, cache):
    cache.apply_delta(delta([make_ref("alice")], minutes=1))
    store.set_state(STATE_AS_OF, "yesterday")
    restored = EmbeddingCache(store, LOCATION_ID)
    assert restored.load().as_of == EPOCH


def test_publish_updates_health_gauges(cache):
    cache.apply_delta(delta([make_ref("alice"), make_ref("bob", axis=1)], minutes=1))
    assert cache.health.gauge("cache_identities") == 2
    assert cache.health.gauge("cache_references") == 2
    assert cache.health.gauge("cache_version") == 1


def test_readers_never_see_a_partial_merge(cache):
    identities = ["a", "b", "c", "d"]
    errors = []
    done = threading.Event()

    def writer():
        for generation in range(1, 60):
            refs = [make_ref(i, axis=n, minutes=generation, reference_id=f"{i}-{generation}")
                    for n, i in enumerate(identities)]
            cache.apply_delta(delta(refs, minutes=generation, full=True))
        done.set()

    def reader():
        while not done.is_set():
            snapshot = cache.snapshot
            generations = {ref.reference_id.split("-")[1]
                           for refs in snapshot.entries.values() for ref in refs}
            if len(generations) > 1:
                errors.append(generations)
            if snapshot.entries and set(snapshot.entries) != set(identities):
                errors.append(set(snapshot.entries))

    threads = [threading.Thread(target=reader) for _ in range(3)]
    for t in threads:
        t.start()
    writer()
    for t in threads:
        t.join(timeout=10)

    assert errors == []
    assert cache.snapshot.version == 59
