from types import SimpleNamespace

import numpy as np
import pytest

from access_edge.config import MatcherConfig
from access_edge.matcher import Matcher, MatcherState, cosine_similarity, rank_identities
from access_edge.schemas.cache_schemas import CacheSnapshot
from access_edge.schemas.decision_schemas import AuthMode, Decision

from conftest import (
    DEVICE_ID,
    LOCATION_ID,
    MODEL,
    T0,
    basis,
    make_ref,
    probe_with_similarity,
)


def snapshot_of(*refs):
    entries = {}
    for ref in refs:
        entries.setdefault(ref.identity_id, []).append(ref)
    return CacheSnapshot(
        location_id=LOCATION_ID,
        as_of=T0,
        entries={k: tuple(v) for k, v in entries.items()},
    )


def make_matcher(clock, snapshot, **overrides):
    cfg = MatcherConfig(**{
        "accept_threshold": 0.9,
        "review_threshold": 0.8,
        "consensus_k": 3,
        "window_seconds": 2.0,
        "cooldown_seconds": 3.0,
        **overrides,
    })
    cache = SimpleNamespace(snapshot=snapshot)
    return Matcher(cfg, cache, MODEL, device_id=DEVICE_ID, location_id=LOCATION_ID, clock=clock)


def test_cosine_identical_is_one():
    v = probe_with_similarity(basis(0), 0.6)
    assert cosine_similarity(v, v) == pytest.approx(1.0, abs=1e-6)


def test_cosine_orthogonal_is_zero():
    assert cosine_similarity(basis(0), basis(1)) == pytest.approx(0.0, abs=1e-9)


def test_cosine_rejects_shape_mismatch():
    with pytest.raises(ValueError):
        cosine_similarity(np.ones(3), np.ones(4))


def test_rank_uses_best_reference_per_identity():
    snapshot = snapshot_of(
        make_ref("alice", axis=0, minutes=1),
        make_ref("alice", axis=1, minutes=2),
        make_ref("bob", axis=2),
    )
    probe = basis(1)
    ranked = rank_identities(probe, snapshot, MODEL)
    assert ranked[0][0] == "alice"
    assert ranked[0][1] == pytest.approx(1.0, abs=1e-6)
    assert dict(ranked)["bob"] == pytest.approx(0.0, abs=1e-6)


def test_rank_ignores_other_model_versions():
    snapshot = snapshot_of(make_ref("alice", axis=0, model="other-model"))
    assert rank_identities(basis(0), snapshot, MODEL) == []


def test_three_votes_for_same_identity_allow(clock):
    matcher = make_matcher(clock, snapshot_of(make_ref("X", axis=0)))
    probe = probe_with_similarity(basis(0), 0.95)

    assert matcher.submit(probe, T0) is None
    clock.advance(0.5)
    assert matcher.submit(probe, T0) is None
    clock.advance(0.5)
    record = matcher.submit(probe, T0)

    assert record.decision == Decision.ALLOW
    assert record.identity_id == "X"
    assert record.similarity == pytest.approx(0.95, abs=1e-4)
    assert record.reason == "consensus"
    assert record.latency_ms == 1000
    assert record.device_id == DEVICE_ID
    assert record.location_id == LOCATION_ID
    assert record.mode == AuthMode.FACE_ONLY
    assert matcher.state == MatcherState.DONE


def test_three_different_identities_review(clock):
    snapshot = snapshot_of(make_ref("A", axis=0), make_ref("B", axis=1), make_ref("C", axis=2))
    matcher = make_matcher(clock, snapshot)

    sims = [0.93, 0.97, 0.91]
    record = None
    for axis, sim in zip(range(3), sims):
        record = matcher.submit(probe_with_similarity(basis(axis), sim), T0)
        clock.advance(0.3)

    assert record.decision == Decision.REVIEW
    assert record.identity_id is None
    assert record.similarity == pytest.approx(0.97, abs=1e-4)
    assert record.reason == "no_consensus"


def test_no_votes_deny_when_window_elapses(clock):
    matcher = make_matcher(clock, snapshot_of(make_ref("X", axis=0)))
    probe = probe_with_similarity(basis(0), 0.3)
    for _ in range(5):
        assert matcher.submit(probe, T0) is None
        clock.advance(0.2)
    assert matcher.state == MatcherState.SAMPLING

    clock.advance(1.5)
    record = matcher.poll()
    assert record.decision == Decision.DENY
    assert record.identity_id is None
    assert record.similarity == pytest.approx(0.3, abs=1e-4)
    assert record.reason == "no_match"


def test_no_vote_frame_breaks_streak_without_ending_attempt(clock):
    matcher = make_matcher(clock, snapshot_of(make_ref("alice", axis=0)))

    records = []
    for sim in [0.95, 0.5, 0.95, 0.95, 0.95]:
        records.append(matcher.submit(probe_with_similarity(basis(0), sim), T0))
        clock.advance(0.2)

    assert records[:4] == [None, None, None, None]
    assert records[4].decision == Decision.ALLOW
    assert records[4].identity_id == "alice"
    assert records[4].similarity == pytest.approx(0.95, abs=1e-4)
    assert records[4].latency_ms == 800


def test_broken_streak_that_never_reaches_k_reviews_on_expiry(clock):
    matcher = make_matcher(clock, snapshot_of(make_ref("alice", axis=0)))
    for sim in [0.95, 0.95, 0.5, 0.95, 0.5]:
        assert matcher.submit(probe_with_similarity(basis(0), sim), T0) is None
        clock.advance(0.3)

    clock.advance(1.0)
    record = matcher.poll()
    assert record.decision == Decision.REVIEW
    assert record.identity_id is None
    assert record.reason == "window_expired"


def test_empty_cache_denies_with_null_similarity(clock):
    matcher = make_matcher(clock, CacheSnapshot.empty(LOCATION_ID), consensus_k=1)
    assert matcher.submit(basis(0), T0) is None
    clock.advance(2.5)
    record = matcher.poll()
    assert record.decision == Decision.DENY
    assert record.similarity is None


def test_window_expiry_with_votes_reviews(clock):
    matcher = make_matcher(clock, snapshot_of(make_ref("X", axis=0)))
    probe = probe_with_similarity(basis(0), 0.95)
    matcher.submit(probe, T0)
    matcher.submit(probe, T0)

    clock.advance(2.0)
    assert matcher.poll() is None  # window is inclusive

    clock.advance(0.01)
    record = matcher.poll()
    assert record.decision == Decision.REVIEW
    assert record.identity_id is None
    assert record.reason == "window_expired"


def test_window_expiry_without_votes_denies(clock):
    matcher = make_matcher(clock, snapshot_of(make_ref("X", axis=0)))
    matcher.submit(probe_with_similarity(basis(0), 0.1), T0)
    clock.advance(5.0)
    record = matcher.poll()
    assert record.decision == Decision.DENY


def test_cooldown_suppresses_new_attempt(clock):
    matcher = make_matcher(clock, snapshot_of(make_ref("X", axis=0)), consensus_k=1)
    probe = probe_with_similarity(basis(0), 0.95)

    first = matcher.submit(probe, T0)
    assert first.decision == Decision.ALLOW

    clock.advance(1.0)
    assert matcher.submit(probe, T0) is None
    assert matcher.stats["samples_in_cooldown"] == 1

    clock.advance(2.5)
    second = matcher.submit(probe, T0)
    assert second is not None
    assert second.event_id != first.event_id


def test_at_most_one_record_per_attempt_and_unique_ids(clock):
    matcher = make_matcher(clock, snapshot_of(make_ref("X", axis=0)))
    probe = probe_with_similarity(basis(0), 0.95)

    records = []
    for _ in range(60):
        record = matcher.submit(probe, T0) or matcher.poll()
        if record is not None:
            records.append(record)
        clock.advance(0.25)

    assert matcher.stats["attempts_completed"] == len(records)
    assert len({r.event_id for r in records}) == len(records)
    # 3 samples + 3 s cool-down per attempt at 4 frames per second
    assert 3 <= len(records) <= 5


def test_reset_discards_attempt(clock):
    matcher = make_matcher(clock, snapshot_of(make_ref("X", axis=0)))
    matcher.submit(probe_with_similarity(basis(0), 0.95), T0)
    matcher.reset()
    assert matcher.state == MatcherState.IDLE
    clock.advance(10)
    assert matcher.poll() is None
    assert matcher.stats["attempts_discarded"] == 1


@pytest.mark.parametrize("similarity,expected", [
    (0.95, Decision.ALLOW),
    (0.91, Decision.ALLOW),
    (0.85, Decision.REVIEW),
    (0.81, Decision.REVIEW),
    (0.50, Decision.DENY),
])
def test_single_sample_threshold_bands(clock, similarity, expected):
    matcher = make_matcher(clock, snapshot_of(make_ref("X", axis=0)), consensus_k=1)
    record = matcher.submit(probe_with_similarity(basis(0), similarity), T0)
    if record is None:
        clock.advance(2.5)
        record = matcher.poll()
    assert record.decision == expected
