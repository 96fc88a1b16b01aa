"""
Decision record schemas.

A DecisionRecord is created once by the Matcher at the end of an
authentication attempt and never mutated. The event_id is a uuid4 generated
on the device so the backend can treat redelivery idempotently.

Backend row (auth_events):
    { id, device_id, user_id, similarity, decision, mode, model_version,
      latency_ms, location_id, reason, created_at, payload_json }
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def generate_event_id() -> str:
    """Globally unique event id (uuid4, canonical string form)."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    REVIEW = "review"


class AuthMode(str, Enum):
    FACE_ONLY = "face_only"
    MFA = "mfa"
    OVERRIDE = "override"


class DecisionRecord(BaseModel):
    """Outcome of one completed authentication attempt."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    event_id: str = Field(default_factory=generate_event_id, description="Device-generated uuid4")
    captured_at: datetime = Field(default_factory=utcnow, description="Capture time of the deciding frame")
    identity_id: Optional[str] = Field(None, description="Matched identity, null unless allowed")
    similarity: Optional[float] = Field(None, ge=-1, le=1, description="Cosine similarity")
    decision: Decision
    mode: AuthMode = AuthMode.FACE_ONLY
    model_version: str
    latency_ms: int = Field(0, ge=0, description="First sample capture to decision")
    reason: Optional[str] = None
    device_id: Optional[str] = None
    location_id: Optional[str] = None

    def to_mutation_object(self) -> Dict[str, Any]:
        """Row for the insert_auth_events mutation."""
        return {
            "id": self.event_id,
            "device_id": self.device_id,
            "user_id": self.identity_id,
            "similarity": None if self.similarity is None else round(self.similarity, 4),
            "decision": self.decision.value,
            "mode": self.mode.value,
            "model_version": self.model_version,
            "latency_ms": self.latency_ms,
            "location_id": self.location_id,
            "reason": self.reason,
            "created_at": self.captured_at.isoformat(),
        }
