"""
Access Edge Agent

Components:
    - schemas: Decision records, identity references, SQLite tables
    - frame_source / quality_gate: capture and pre-inference filtering
    - inference: Detector and Embedder adapters over the inference backend
    - embedding_cache: location-scoped snapshot of authorized identities
    - matcher: similarity and multi-sample consensus
    - decision_queue: durable at-least-once outbox
    - sync_client: GraphQL cache pull, decision push, heartbeat
    - fallback: compact record over the low-bandwidth uplink
    - orchestrator: task scheduling and wiring
"""

from .config import AgentConfig, load_config
from .decision_queue import DecisionQueue, compute_backoff
from .embedding_cache import EmbeddingCache
from .errors import (
    CacheSyncFailure,
    CredentialExpired,
    CredentialRevoked,
    DeliveryFailure,
    DeliveryRejected,
    EdgeAgentError,
    InferenceError,
    QualitySignalMissing,
    StorageCorruption,
    StorageInitError,
)
from .fallback import FallbackTransport, decode_record, encode_record
from .health import HealthMonitor
from .matcher import Matcher, cosine_similarity
from .orchestrator import Orchestrator, create_orchestrator
from .quality_gate import QualityGate
from .store import LocalStore
from .sync_client import SyncClient

__version__ = "1.0.0"
__all__ = [
    # Configuration
    "AgentConfig",
    "load_config",
    # Core components
    "DecisionQueue",
    "EmbeddingCache",
    "FallbackTransport",
    "HealthMonitor",
    "LocalStore",
    "Matcher",
    "Orchestrator",
    "QualityGate",
    "SyncClient",
    "compute_backoff",
    "cosine_similarity",
    "create_orchestrator",
    "decode_record",
    "encode_record",
    # Errors
    "CacheSyncFailure",
    "CredentialExpired",
    "CredentialRevoked",
    "DeliveryFailure",
    "DeliveryRejected",
    "EdgeAgentError",
    "InferenceError",
    "QualitySignalMissing",
    "StorageCorruption",
    "StorageInitError",
]
