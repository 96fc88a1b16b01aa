import sqlite3
import threading
import time
from datetime import datetime, timezone

import numpy as np
import pytest

from access_edge.config import InferenceConfig, MatcherConfig
from access_edge.fallback import Uplink
from access_edge.frame_source import Frame, FrameSource, QualitySignals
from access_edge.inference import FaceRegion, InferenceBackend
from access_edge.orchestrator import create_orchestrator
from access_edge.schemas.cache_schemas import CacheDelta
from access_edge.schemas.decision_schemas import Decision

from conftest import (
    LOCATION_ID,
    T0,
    FakeResponse,
    FakeSession,
    basis,
    insert_ok,
    make_ref,
    probe_with_similarity,
)

GOOD_SIGNALS = QualitySignals(exposure=0.5, blur=0.1, occlusion=0.0)


class FakeBackend(InferenceBackend):
    model_version = "test-v1"

    def __init__(self, vector=None, regions=None, error=None, delay=0.0):
        self.vector = vector if vector is not None else probe_with_similarity(basis(0), 0.95)
        self.regions = regions if regions is not None else [FaceRegion(10, 10, 40, 40, 0.99)]
        self.error = error
        self.delay = delay
        self.detect_calls = 0

    def detect(self, image):
        self.detect_calls += 1
        return list(self.regions)

    def embed(self, image, region):
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.vector


class FakeCapture:
    def __init__(self, image):
        self.image = image
        self.released = False

    def isOpened(self):
        return True

    def read(self):
        return True, self.image.copy()

    def release(self):
        self.released = True


class NullUplink(Uplink):
    name = "null"

    def __init__(self):
        self.payloads = []

    def send(self, payload):
        self.payloads.append(payload)


def textured_image():
    rng = np.random.default_rng(0)
    return rng.integers(60, 200, size=(120, 160, 3), dtype=np.uint8)


def make_frame(signals=GOOD_SIGNALS, frame_id=1):
    return Frame(
        frame_id=frame_id,
        image=np.zeros((120, 160, 3), dtype=np.uint8),
        captured_at=datetime.now(timezone.utc),
        captured_monotonic=time.monotonic(),
        signals=signals,
    )


def make_agent(agent_config, backend=None, session=None, matcher=None, inference=None):
    update = {"matcher": matcher or MatcherConfig(consensus_k=1, cooldown_seconds=0.0)}
    if inference is not None:
        update["inference"] = inference
    config = agent_config.model_copy(update=update)
    source = FrameSource(config.camera, capture_factory=lambda: FakeCapture(textured_image()))
    agent = create_orchestrator(
        config,
        backend=backend or FakeBackend(),
        session=session or FakeSession(graphql=insert_ok),
        uplink=NullUplink(),
        frame_source=source,
    )
    agent.cache.apply_delta(CacheDelta(
        location_id=LOCATION_ID,
        as_of=T0,
        references=(make_ref("alice", axis=0),),
    ))
    return agent


@pytest.mark.parametrize("similarity,decision,identity", [
    (0.95, Decision.ALLOW, "alice"),
    (0.85, Decision.REVIEW, None),
])
def test_frame_produces_decision(agent_config, similarity, decision, identity):
    backend = FakeBackend(vector=probe_with_similarity(basis(0), similarity))
    agent = make_agent(agent_config, backend=backend)

    records = agent.process_frame(make_frame())

    assert len(records) == 1
    assert records[0].decision == decision
    assert records[0].identity_id == identity
    assert agent.queue.depth() == 1
    assert agent.queue.pending()[0].event_id == records[0].event_id
    assert agent.health.get(f"decisions_{decision.value}") == 1
    agent.close()


def test_unmatched_face_denies_when_window_elapses(agent_config):
    backend = FakeBackend(vector=probe_with_similarity(basis(0), 0.50))
    matcher = MatcherConfig(consensus_k=1, window_seconds=0.05, cooldown_seconds=0.0)
    agent = make_agent(agent_config, backend=backend, matcher=matcher)

    assert agent.process_frame(make_frame()) == []
    time.sleep(0.1)
    records = agent.process_frame(make_frame(QualitySignals(None, None, None)))

    assert len(records) == 1
    assert records[0].decision == Decision.DENY
    assert records[0].identity_id is None
    assert records[0].reason == "no_match"
    assert agent.queue.depth() == 1
    assert agent.health.get("decisions_deny") == 1
    agent.close()


def test_missing_signal_rejected_before_inference(agent_config):
    backend = FakeBackend()
    agent = make_agent(agent_config, backend=backend)

    frame = make_frame(QualitySignals(exposure=0.5, blur=None, occlusion=0.0))
    assert agent.process_frame(frame) == []

    assert backend.detect_calls == 0
    assert agent.health.get("frames_rejected") == 1
    assert agent.health.get("quality_signal_missing") == 1
    agent.close()


def test_blurry_frame_rejected(agent_config):
    backend = FakeBackend()
    agent = make_agent(agent_config, backend=backend)
    assert agent.process_frame(make_frame(QualitySignals(0.5, 0.95, 0.0))) == []
    assert backend.detect_calls == 0
    agent.close()


def test_no_face_no_decision(agent_config):
    agent = make_agent(agent_config, backend=FakeBackend(regions=[]))
    assert agent.process_frame(make_frame()) == []
    assert agent.queue.depth() == 0
    agent.close()


def test_low_confidence_face_ignored(agent_config):
    backend = FakeBackend(regions=[FaceRegion(0, 0, 20, 20, 0.2)])
    agent = make_agent(agent_config, backend=backend)
    assert agent.process_frame(make_frame()) == []
    assert agent.health.get("faces_detected") == 0
    agent.close()


def test_inference_error_drops_frame(agent_config):
    agent = make_agent(agent_config, backend=FakeBackend(error=RuntimeError("npu reset")))
    assert agent.process_frame(make_frame()) == []
    assert agent.health.get("inference_errors") == 1
    assert agent.queue.depth() == 0
    agent.close()


def test_wrong_embedding_dimension_is_inference_error(agent_config):
    agent = make_agent(agent_config, backend=FakeBackend(vector=np.ones(4, dtype=np.float32)))
    assert agent.process_frame(make_frame()) == []
    assert agent.health.get("inference_errors") == 1
    agent.close()


def test_inference_timeout_drops_frame(agent_config):
    inference = InferenceConfig(model_version="test-v1", embedding_dim=8, timeout_seconds=0.05)
    agent = make_agent(agent_config, backend=FakeBackend(delay=0.5), inference=inference)
    assert agent.process_frame(make_frame()) == []
    assert agent.health.get("inference_errors") == 1
    agent.close()


def test_window_expiry_resolves_on_rejected_frames(agent_config):
    matcher = MatcherConfig(consensus_k=3, window_seconds=0.05, cooldown_seconds=0.0)
    agent = make_agent(agent_config, matcher=matcher)

    assert agent.process_frame(make_frame()) == []
    time.sleep(0.1)
    records = agent.process_frame(make_frame(QualitySignals(None, None, None)))

    assert len(records) == 1
    assert records[0].decision == Decision.REVIEW
    assert records[0].reason == "window_expired"
    agent.close()


def test_enqueue_failure_is_counted(agent_config, monkeypatch):
    agent = make_agent(agent_config)

    def locked(record):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(agent.queue, "enqueue", locked)
    records = agent.process_frame(make_frame())

    assert len(records) == 1
    assert agent.health.get("enqueue_failures") == 1
    agent.close()


def test_run_once_captures_syncs_and_delivers(agent_config):
    session = FakeSession(graphql=insert_ok)
    agent = make_agent(agent_config, session=session)

    records = agent.run_once()

    assert len(records) == 1
    assert records[0].decision == Decision.ALLOW
    assert agent.queue.depth() == 0
    inserted = [p for p in session.graphql_calls() if "insert_auth_events" in p["query"]]
    assert inserted[0]["variables"]["objects"][0]["id"] == records[0].event_id
    assert session.closed


def test_revoked_credential_marks_device(agent_config):
    session = FakeSession(graphql=insert_ok, auth=lambda payload: FakeResponse(401))
    agent = make_agent(agent_config, session=session)

    agent.run_once()

    assert agent.health.gauge("needs_provisioning") is True
    assert agent.queue.depth() == 1
    assert agent.sync_client.credentials.needs_provisioning

    agent.reprovision()
    assert agent.health.gauge("needs_provisioning") is False
    assert not agent.sync_client.credentials.needs_provisioning


def test_start_and_stop_join_all_tasks(agent_config):
    agent = make_agent(agent_config)
    agent.start()
    time.sleep(0.5)
    agent.stop(grace_seconds=5.0)

    alive = [t for t in threading.enumerate() if t.name.startswith("Agent-")]
    assert alive == []
    assert agent.health.get("frames_captured") >= 1
