"""
Fallback transport over the low-bandwidth uplink.

When the primary transport has been failing for longer than the outage
threshold, the oldest unacknowledged decisions are re-encoded into a fixed
binary record and handed to the uplink. Delivery is fire-and-forget; the
entries stay in the outbox tagged as sent via fallback and the primary keeps
retrying them at a reduced rate.

Record layout (big-endian, 57 bytes):

    offset size field
    0      1    version
    1      1    flags            bit0 similarity present, bit1 identity hint present
    2      16   event_id         UUID bytes
    18     16   device_id        UUID bytes (uuid5 of the id if it is not a UUID)
    34     8    timestamp_ms     capture time, ms since epoch
    42     1    decision         0 allow, 1 deny, 2 review
    43     2    similarity       int16, similarity * 10000
    45     8    identity_hint    first 8 bytes of the identity UUID
    53     4    crc32            over bytes 0..52
"""

import logging
import struct
import time
import uuid
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .config import FallbackConfig
from .decision_queue import DecisionQueue
from .health import HealthMonitor
from .logging_config import DecisionLogger
from .schemas.decision_schemas import Decision, DecisionRecord
from .sync_client import OutageTracker

logger = logging.getLogger(__name__)

RECORD_VERSION = 1
FLAG_SIMILARITY = 0x01
FLAG_IDENTITY_HINT = 0x02

_BODY = struct.Struct(">BB16s16sQBh8s")
_CRC = struct.Struct(">I")
RECORD_SIZE = _BODY.size + _CRC.size

DECISION_CODES = {Decision.ALLOW: 0, Decision.DENY: 1, Decision.REVIEW: 2}
DECISIONS_BY_CODE = {code: decision for decision, code in DECISION_CODES.items()}

# Namespace for device/identity ids that are not UUIDs
ID_NAMESPACE = uuid.UUID("6f1d3c52-8a47-4e2b-9d0c-5b7e1f2a3c4d")


class FallbackEncodingError(ValueError):
    """A decision cannot be represented in the fallback record."""


def _uuid_bytes(value: str) -> bytes:
    try:
        return uuid.UUID(value).bytes
    except (ValueError, AttributeError, TypeError):
        return uuid.uuid5(ID_NAMESPACE, str(value)).bytes


@dataclass(frozen=True)
class FallbackRecord:
    """Decoded fallback record."""
    event_id: str
    device_id: str
    timestamp_ms: int
    decision: Decision
    similarity: Optional[float]
    identity_hint: Optional[bytes]

    @property
    def captured_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp_ms / 1000.0, tz=timezone.utc)


def encode_record(record: DecisionRecord, device_id: str, max_size: int = RECORD_SIZE) -> bytes:
    """
    Encode a decision into the fixed fallback record.

    Raises:
        FallbackEncodingError: If the record does not fit max_size or a
            field cannot be represented
    """
    if RECORD_SIZE > max_size:
        raise FallbackEncodingError(
            f"record is {RECORD_SIZE} bytes, uplink allows {max_size}"
        )

    try:
        event_bytes = uuid.UUID(record.event_id).bytes
    except ValueError as e:
        raise FallbackEncodingError(f"event_id is not a UUID: {record.event_id}") from e

    flags = 0
    similarity = 0
    if record.similarity is not None:
        flags |= FLAG_SIMILARITY
        similarity = int(round(record.similarity * 10000))
    hint = bytes(8)
    if record.identity_id:
        flags |= FLAG_IDENTITY_HINT
        hint = _uuid_bytes(record.identity_id)[:8]

    timestamp_ms = int(record.captured_at.timestamp() * 1000)
    if timestamp_ms < 0:
        raise FallbackEncodingError(f"timestamp before epoch: {record.captured_at}")

    body = _BODY.pack(
        RECORD_VERSION,
        flags,
        event_bytes,
        _uuid_bytes(device_id),
        timestamp_ms,
        DECISION_CODES[record.decision],
        similarity,
        hint,
    )
    return body + _CRC.pack(zlib.crc32(body) & 0xFFFFFFFF)


def decode_record(payload: bytes) -> FallbackRecord:
    """
    Decode a fallback record.

    Raises:
        FallbackEncodingError: On wrong size, version, checksum or decision code
    """
    if len(payload) != RECORD_SIZE:
        raise FallbackEncodingError(f"expected {RECORD_SIZE} bytes, got {len(payload)}")

    body, crc_bytes = payload[:_BODY.size], payload[_BODY.size:]
    (crc,) = _CRC.unpack(crc_bytes)
    if zlib.crc32(body) & 0xFFFFFFFF != crc:
        raise FallbackEncodingError("checksum mismatch")

    version, flags, event_bytes, device_bytes, timestamp_ms, code, similarity, hint = (
        _BODY.unpack(body)
    )
    if version != RECORD_VERSION:
        raise FallbackEncodingError(f"unsupported record version {version}")
    if code not in DECISIONS_BY_CODE:
        raise FallbackEncodingError(f"unknown decision code {code}")

    return FallbackRecord(
        event_id=str(uuid.UUID(bytes=event_bytes)),
        device_id=str(uuid.UUID(bytes=device_bytes)),
        timestamp_ms=timestamp_ms,
        decision=DECISIONS_BY_CODE[code],
        similarity=similarity / 10000.0 if flags & FLAG_SIMILARITY else None,
        identity_hint=hint if flags & FLAG_IDENTITY_HINT else None,
    )


# =============================================================================
# Uplinks
# =============================================================================

class Uplink:
    """Best-effort secondary channel. send() gives no delivery guarantee."""

    name = "uplink"

    def send(self, payload: bytes) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class LoggingUplink(Uplink):
    """Writes payloads to the log; for bench setups without a radio."""

    name = "log"

    def send(self, payload: bytes) -> None:
        logger.info(f"[FALLBACK TX] {len(payload)} bytes: {payload.hex()}")


class FileUplink(Uplink):
    """
    Appends length-prefixed payloads to a spool file or FIFO read by the
    radio modem daemon.
    """

    name = "file"

    def __init__(self, path: str):
        self.path = Path(path)

    def send(self, payload: bytes) -> None:
        with open(self.path, "ab") as f:
            f.write(struct.pack(">H", len(payload)) + payload)
            f.flush()


def create_uplink(spec: str) -> Uplink:
    """
    Build an uplink from its config string.

    "log" -> LoggingUplink, "file:/path" -> FileUplink
    """
    if spec == "log":
        return LoggingUplink()
    if spec.startswith("file:"):
        return FileUplink(spec[len("file:"):])
    raise ValueError(f"Unknown fallback uplink: {spec}")


# =============================================================================
# Transport
# =============================================================================

class FallbackTransport:
    """
    Drains the outbox over the uplink during primary outages.

    Usage:
        fallback = FallbackTransport(config.fallback, queue, outage, uplink, device_id)
        sent = fallback.run_once()
    """

    def __init__(
        self,
        config: FallbackConfig,
        queue: DecisionQueue,
        outage: OutageTracker,
        uplink: Uplink,
        device_id: str,
        health: Optional[HealthMonitor] = None,
        decision_logger: Optional[DecisionLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.queue = queue
        self.outage = outage
        self.uplink = uplink
        self.device_id = device_id
        self.health = health or HealthMonitor()
        self.decision_logger = decision_logger or DecisionLogger(device_id)
        self.clock = clock
        self._was_active = False
        self._fits_uplink = RECORD_SIZE <= config.max_payload_bytes
        if config.enabled and not self._fits_uplink:
            logger.error(
                f"Fallback disabled: records are {RECORD_SIZE} bytes, "
                f"uplink allows {config.max_payload_bytes}"
            )

    def is_active(self, now: Optional[float] = None) -> bool:
        """True once the primary has failed for longer than the outage threshold."""
        if not self.config.enabled:
            return False
        now = self.clock() if now is None else now
        return self.outage.in_outage(self.config.outage_threshold_seconds, now)

    def run_once(self) -> int:
        """
        One fallback round.

        Nothing goes out until the primary has failed for longer than the
        outage threshold; then the oldest entries not yet sent via fallback
        do. An entry that cannot fit the record format is archived.

        Returns:
            Number of records handed to the uplink
        """
        if not self.config.enabled or not self._fits_uplink:
            return 0

        active = self.is_active()
        if active != self._was_active:
            if active:
                logger.warning(
                    f"Primary down for {self.outage.outage_seconds():.0f}s, "
                    f"fallback transport active"
                )
            else:
                logger.info("Fallback transport inactive")
            self._was_active = active
        self.health.set_gauge("fallback_active", active)
        if not active:
            return 0

        entries = self.queue.fallback_candidates(self.config.batch_size)
        if not entries:
            return 0

        sent = []
        for entry in entries:
            try:
                payload = encode_record(entry.record, self.device_id, self.config.max_payload_bytes)
            except FallbackEncodingError as e:
                logger.error(f"Cannot encode {entry.event_id} for fallback, archiving: {e}")
                self.health.record_error("fallback_encoding_errors", e)
                self.queue.archive(entry.event_id, f"fallback_encoding: {e}")
                continue

            try:
                self.uplink.send(payload)
            except OSError as e:
                logger.error(f"Fallback uplink failed: {e}")
                self.health.record_error("fallback_uplink_errors", e)
                break

            sent.append(entry)
            self.decision_logger.log_fallback(entry.event_id, len(payload), self.uplink.name)

        if sent:
            self.queue.mark_fallback_sent(sent)
            self.health.increment("fallback_sent", len(sent))
        return len(sent)
