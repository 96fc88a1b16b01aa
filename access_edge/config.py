"""
Agent configuration.

The device configuration is a single JSON file with one section per
component. Every value has a default so a minimal file only needs the
identity fields:

    {
        "device_id": "7f1c9a2e-3a51-4d0e-9c1f-2b8f0d7e4a11",
        "location_id": "c0b5d1a4-0f7e-4b3a-8f52-6a1d2e9c7b30",
        "sync": {"graphql_url": "https://backend.example/v1/graphql",
                 "auth_url": "https://backend.example/auth/device"}
    }

Usage:
    config = load_config("/opt/access-edge/config/agent_config.json")
    matcher = Matcher(config.matcher, ...)
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/opt/access-edge/config/agent_config.json"


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore")


class CameraConfig(_Section):
    """Capture device settings."""
    source: str = Field("0", description="Camera index, device path or RTSP URL")
    fps: int = Field(10, ge=1, description="Capture loop target rate")
    process_fps: float = Field(5.0, gt=0, description="Rate at which frames enter the pipeline")
    reconnect_delay_seconds: float = Field(1.0, ge=0)


class QualityConfig(_Section):
    """QualityGate thresholds. Signals are normalized to [0, 1]."""
    blur_ceiling: float = Field(0.6, ge=0, le=1, description="Reject if blur estimate exceeds this")
    exposure_min: float = Field(0.15, ge=0, le=1)
    exposure_max: float = Field(0.85, ge=0, le=1)
    occlusion_ceiling: float = Field(0.5, ge=0, le=1, description="Reject if occlusion probability exceeds this")

    @model_validator(mode="after")
    def _check_band(self):
        if self.exposure_min > self.exposure_max:
            raise ValueError("exposure_min must not exceed exposure_max")
        return self


class InferenceConfig(_Section):
    """External inference interface settings."""
    backend: str = Field("opencv", description="Inference backend name")
    detector_model_path: Optional[str] = None
    embedder_model_path: Optional[str] = None
    model_version: str = Field("sface-2021dec", description="Opaque tag carried into decision records")
    embedding_dim: int = Field(128, ge=1)
    min_detection_confidence: float = Field(0.6, ge=0, le=1)
    crop_margin: float = Field(0.2, ge=0, description="Margin added around a face box before embedding")
    input_size: int = Field(112, ge=1, description="Side of the square crop handed to the embedder")
    timeout_seconds: float = Field(2.0, gt=0)


class MatcherConfig(_Section):
    """
    Decision thresholds and consensus rule.

    Smaller consensus_k / window_seconds make the device more responsive and
    raise the false-accept rate.
    """
    accept_threshold: float = Field(0.90, ge=-1, le=1)
    review_threshold: float = Field(0.80, ge=-1, le=1, description="Lower bound of the review band")
    consensus_k: int = Field(3, ge=1)
    window_seconds: float = Field(2.0, gt=0)
    cooldown_seconds: float = Field(3.0, ge=0)
    mode: str = Field("face_only", description="face_only | mfa | override")

    @model_validator(mode="after")
    def _check_band(self):
        if self.review_threshold > self.accept_threshold:
            raise ValueError("review_threshold must not exceed accept_threshold")
        if self.mode not in ("face_only", "mfa", "override"):
            raise ValueError(f"unknown auth mode: {self.mode}")
        return self


class CacheConfig(_Section):
    """EmbeddingCache settings."""
    references_per_identity: int = Field(5, ge=1, description="N newest references kept per identity per model")
    model_dimensions: Dict[str, int] = Field(default_factory=dict,
                                             description="Expected vector length per model_version")


class QueueConfig(_Section):
    """DecisionQueue durability and retry settings."""
    db_path: str = Field("/opt/access-edge/data/agent.db")
    backoff_base_seconds: float = Field(2.0, gt=0)
    backoff_max_seconds: float = Field(300.0, gt=0)
    backoff_jitter: float = Field(0.5, ge=0, le=1)
    max_attempts: int = Field(10, ge=1, description="Past this, entries retry at the capped delay and are flagged stuck")
    retention_days: float = Field(7.0, gt=0)
    write_timeout_seconds: float = Field(0.5, gt=0, description="SQLite busy timeout for enqueue")


class SyncConfig(_Section):
    """Primary transport (GraphQL over HTTPS) and schedule."""
    graphql_url: str = Field("http://127.0.0.1:8080/v1/graphql")
    auth_url: str = Field("http://127.0.0.1:8080/auth/device")
    device_secret_path: str = Field("/opt/access-edge/secrets/device_secret")
    timeout_seconds: float = Field(10.0, gt=0)
    verify_ssl: bool = True
    max_retries: int = Field(1, ge=0, description="Transport-level retries inside one attempt")
    sync_interval_seconds: float = Field(60.0, gt=0)
    sync_page_size: int = Field(500, ge=1)
    delivery_interval_seconds: float = Field(2.0, gt=0)
    delivery_batch_size: int = Field(10, ge=1)
    heartbeat_interval_seconds: float = Field(60.0, gt=0)
    credential_refresh_margin_seconds: float = Field(60.0, ge=0)
    firmware_version: Optional[str] = None


class FallbackConfig(_Section):
    """Secondary low-bandwidth channel."""
    enabled: bool = True
    outage_threshold_seconds: float = Field(120.0, ge=0)
    interval_seconds: float = Field(15.0, gt=0)
    batch_size: int = Field(4, ge=1)
    max_payload_bytes: int = Field(64, ge=1)
    primary_retry_multiplier: float = Field(4.0, ge=1, description="Reduced primary retry rate after fallback send")
    uplink: str = Field("log", description="Uplink implementation name")


class LoggingConfig(_Section):
    log_dir: str = "logs"
    json_logs: bool = True
    level: str = "INFO"
    status_interval_seconds: float = Field(30.0, gt=0)


class AgentConfig(_Section):
    """Complete agent configuration."""
    device_id: str = Field(..., min_length=1)
    location_id: str = Field(..., min_length=1)
    camera: CameraConfig = Field(default_factory=CameraConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    inference: InferenceConfig = Field(default_factory=InferenceConfig)
    matcher: MatcherConfig = Field(default_factory=MatcherConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    fallback: FallbackConfig = Field(default_factory=FallbackConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def resolve_config_path(path: Optional[str] = None) -> str:
    """CLI argument, then CONFIG_PATH, then the packaged default."""
    return path or os.environ.get("CONFIG_PATH", DEFAULT_CONFIG_PATH)


def load_config(path: str) -> AgentConfig:
    """
    Load and validate configuration from a JSON file.

    Args:
        path: Path to the JSON configuration file

    Returns:
        Validated AgentConfig

    Raises:
        FileNotFoundError: If the file does not exist
        pydantic.ValidationError: If a value is out of range
    """
    with open(Path(path), "r") as f:
        raw = json.load(f)
    config = AgentConfig.model_validate(raw)
    logger.info(f"Loaded config from {path}")
    return config
