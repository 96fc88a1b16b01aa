"""
Data models for the edge agent.

This module defines:
- Decision records (matcher output, outbox payload)
- Identity references and cache snapshots
- Database records and SQLite table definitions
"""

from .decision_schemas import (
    AuthMode,
    Decision,
    DecisionRecord,
    generate_event_id,
)
from .cache_schemas import (
    CacheDelta,
    CacheSnapshot,
    EmbeddingRow,
    IdentityReference,
    RevokedRow,
    normalize_vector,
)
from .db_schemas import (
    DELIVERED_VIA_FALLBACK,
    DELIVERED_VIA_NONE,
    DELIVERED_VIA_PRIMARY,
    QueueEntry,
)

__all__ = [
    # Decision schemas
    "AuthMode",
    "Decision",
    "DecisionRecord",
    "generate_event_id",
    # Cache schemas
    "CacheDelta",
    "CacheSnapshot",
    "EmbeddingRow",
    "IdentityReference",
    "RevokedRow",
    "normalize_vector",
    # DB schemas
    "DELIVERED_VIA_FALLBACK",
    "DELIVERED_VIA_NONE",
    "DELIVERED_VIA_PRIMARY",
    "QueueEntry",
]
