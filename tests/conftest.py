import logging
import math
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from access_edge.config import AgentConfig
from access_edge.logging_config import DECISION_LOGGER_NAME
from access_edge.schemas.cache_schemas import IdentityReference, normalize_vector
from access_edge.store import LocalStore

DEVICE_ID = "7f1c9a2e-3a51-4d0e-9c1f-2b8f0d7e4a11"
LOCATION_ID = "c0b5d1a4-0f7e-4b3a-8f52-6a1d2e9c7b30"
MODEL = "test-v1"
DIM = 8

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

GRAPHQL_URL = "http://backend.test/v1/graphql"
AUTH_URL = "http://backend.test/auth/device"


class FakeClock:
    """Manually advanced clock, usable for both wall and monotonic time."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def basis(index: int, dim: int = DIM) -> np.ndarray:
    v = np.zeros(dim, dtype=np.float32)
    v[index] = 1.0
    return v


def probe_with_similarity(reference: np.ndarray, similarity: float, other_axis: int = DIM - 1) -> np.ndarray:
    """Unit vector whose cosine similarity to `reference` (a basis vector) is `similarity`."""
    other = basis(other_axis, reference.shape[0])
    v = similarity * reference + math.sqrt(max(0.0, 1.0 - similarity ** 2)) * other
    return normalize_vector(v)


def make_ref(identity_id, axis=0, reference_id=None, minutes=0, model=MODEL, dim=DIM):
    return IdentityReference(
        reference_id=reference_id or f"{identity_id}-ref-{minutes}",
        identity_id=identity_id,
        vector=normalize_vector(basis(axis, dim)),
        model_version=model,
        quality_score=0.9,
        created_at=T0 + timedelta(minutes=minutes),
    )


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body if body is not None else {}
        self.text = str(self._body)

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class FakeSession:
    """Routes POSTs to a GraphQL handler and a credential handler."""

    def __init__(self, graphql=None, auth=None):
        self.graphql = graphql or (lambda payload: FakeResponse(200, {"data": {}}))
        self.auth = auth or (lambda payload: FakeResponse(200, {
            "token": "tok", "issued_at": 0, "expires_at": 4_000_000_000,
        }))
        self.calls = []
        self.closed = False

    def post(self, url, json=None, headers=None, timeout=None, verify=True):
        self.calls.append((url, json, headers))
        if url == AUTH_URL:
            return self.auth(json)
        return self.graphql(json)

    def close(self):
        self.closed = True

    def graphql_calls(self):
        return [payload for url, payload, _ in self.calls if url == GRAPHQL_URL]

    def auth_calls(self):
        return [payload for url, payload, _ in self.calls if url == AUTH_URL]


def insert_ok(payload):
    """GraphQL handler that stores every auth event it is sent."""
    if "insert_auth_events" not in payload["query"]:
        return FakeResponse(200, {"data": {"face_embeddings": [], "users": [],
                                           "update_devices_by_pk": {"id": DEVICE_ID}}})
    objects = payload["variables"]["objects"]
    return FakeResponse(200, {"data": {"insert_auth_events": {
        "affected_rows": len(objects),
        "returning": [{"id": o["id"]} for o in objects],
    }}})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "agent.db")


@pytest.fixture
def store(db_path):
    s = LocalStore(db_path)
    s.initialize()
    return s


@pytest.fixture
def agent_config(tmp_path, db_path):
    secret = tmp_path / "device_secret"
    secret.write_text("s3cret\n")
    return AgentConfig.model_validate({
        "device_id": DEVICE_ID,
        "location_id": LOCATION_ID,
        "inference": {"model_version": MODEL, "embedding_dim": DIM, "timeout_seconds": 1.0},
        "queue": {"db_path": db_path, "backoff_jitter": 0.0},
        "sync": {
            "graphql_url": GRAPHQL_URL,
            "auth_url": AUTH_URL,
            "device_secret_path": str(secret),
        },
        "logging": {"log_dir": str(tmp_path / "logs")},
    })


@pytest.fixture
def restore_logging():
    """Undo handler changes made by setup_logging()."""
    loggers = [logging.getLogger(), logging.getLogger(DECISION_LOGGER_NAME)]
    saved = [(lg.handlers[:], lg.level) for lg in loggers]
    yield
    for lg, (handlers, level) in zip(loggers, saved):
        for handler in lg.handlers:
            if handler not in handlers:
                handler.close()
        lg.handlers[:] = handlers
        lg.setLevel(level)
