"""
Embedding cache schemas.

IdentityReference and CacheSnapshot are immutable in-memory values. A
snapshot is built completely before it is published, so anything holding a
reference to one always sees a consistent view.

The wire models (EmbeddingRow, RevokedRow) validate the rows returned by
the backend delta query before they are converted to references.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple, Union

import numpy as np
from pydantic import BaseModel, Field, field_validator

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def normalize_vector(values) -> np.ndarray:
    """
    L2-normalize a vector and freeze it.

    Raises:
        ValueError: If the vector is empty, not 1-D, non-finite or zero
    """
    vector = np.asarray(values, dtype=np.float32)
    if vector.ndim != 1 or vector.size == 0:
        raise ValueError(f"expected a 1-D vector, got shape {vector.shape}")
    if not np.all(np.isfinite(vector)):
        raise ValueError("vector contains non-finite values")
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        raise ValueError("zero-norm vector")
    vector = vector / norm
    vector.flags.writeable = False
    return vector


@dataclass(frozen=True)
class IdentityReference:
    """One enrolled reference vector for an identity."""
    reference_id: str
    identity_id: str
    vector: np.ndarray
    model_version: str
    quality_score: Optional[float]
    created_at: datetime

    @property
    def dim(self) -> int:
        return int(self.vector.shape[0])


@dataclass(frozen=True)
class CacheDelta:
    """
    A fragment of the remote source of truth since some timestamp.

    A full delta carries every reference for the location and replaces the
    snapshot instead of merging into it.
    """
    location_id: str
    as_of: datetime
    references: Tuple[IdentityReference, ...] = ()
    revoked: Tuple[str, ...] = ()
    full: bool = False


@dataclass(frozen=True)
class CacheSnapshot:
    """
    Published view of the cache.

    entries maps identity_id to references ordered newest first. The mapping
    is read-only; a new snapshot is built for every change.
    """
    location_id: str
    as_of: datetime
    entries: Mapping[str, Tuple[IdentityReference, ...]]
    version: int = 0
    _matrices: Dict[str, Tuple[List[str], np.ndarray]] = field(
        default_factory=dict, repr=False, compare=False
    )

    @classmethod
    def empty(cls, location_id: str) -> "CacheSnapshot":
        return cls(location_id=location_id, as_of=EPOCH, entries=MappingProxyType({}))

    def reference_count(self) -> int:
        return sum(len(refs) for refs in self.entries.values())

    def matrix(self, model_version: str) -> Tuple[List[str], np.ndarray]:
        """
        Stack every reference of one model version.

        Returns:
            (owners, matrix) where owners[i] is the identity of matrix row i
        """
        cached = self._matrices.get(model_version)
        if cached is not None:
            return cached

        owners: List[str] = []
        rows: List[np.ndarray] = []
        for identity_id, refs in self.entries.items():
            for ref in refs:
                if ref.model_version == model_version:
                    owners.append(identity_id)
                    rows.append(ref.vector)

        if rows:
            matrix = np.vstack(rows)
        else:
            matrix = np.zeros((0, 0), dtype=np.float32)
        matrix.flags.writeable = False

        # Same result for concurrent callers, so a racing write is harmless.
        self._matrices[model_version] = (owners, matrix)
        return owners, matrix


# =============================================================================
# Wire models for the backend delta query
# =============================================================================

class EmbeddingRow(BaseModel):
    """Row of the face_embeddings delta query."""
    id: str
    user_id: str
    embedding: Union[List[float], str] = Field(..., description="pgvector text '[...]' or JSON list")
    model_version: str
    quality_score: Optional[float] = None
    created_at: datetime

    @field_validator("embedding")
    @classmethod
    def _parse_vector(cls, value):
        if isinstance(value, str):
            value = json.loads(value)
        if not isinstance(value, list) or not value:
            raise ValueError("embedding must be a non-empty list")
        return [float(v) for v in value]

    @field_validator("created_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    def to_reference(self) -> IdentityReference:
        return IdentityReference(
            reference_id=self.id,
            identity_id=self.user_id,
            vector=normalize_vector(self.embedding),
            model_version=self.model_version,
            quality_score=self.quality_score,
            created_at=self.created_at,
        )


class RevokedRow(BaseModel):
    """Identity whose access was withdrawn since the last sync."""
    id: str
    updated_at: datetime

    @field_validator("updated_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
