"""
Structured logging configuration for the access agent.

Provides JSON Lines logs for aggregation and a separate decision log that
traces each decision record from creation to acknowledgment.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

DECISION_LOGGER_NAME = "access_edge.decisions"


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs one JSON object per line.
    """

    def __init__(
        self,
        device_id: str = "unknown",
        include_extra: bool = True,
        pretty: bool = False,
    ):
        super().__init__()
        self.device_id = device_id
        self.include_extra = include_extra
        self.pretty = pretty

        # Standard LogRecord attributes, excluded from extra
        self._skip_fields = {
            'name', 'msg', 'args', 'created', 'filename', 'funcName',
            'levelname', 'levelno', 'lineno', 'module', 'msecs',
            'pathname', 'process', 'processName', 'relativeCreated',
            'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
            'message', 'asctime', 'taskName'
        }

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": _utc_iso(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "device_id": self.device_id,
            "source": {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            extra = {}
            for key, value in record.__dict__.items():
                if key not in self._skip_fields:
                    try:
                        json.dumps(value)
                        extra[key] = value
                    except (TypeError, ValueError):
                        extra[key] = str(value)

            if extra:
                log_entry["extra"] = extra

        if self.pretty:
            return json.dumps(log_entry, indent=2, default=str)
        return json.dumps(log_entry, default=str)


class DecisionLogger:
    """
    Lifecycle log for decision records.

    Every line carries the event_id, so one grep over the decision log shows
    when a decision was made, queued, sent and acknowledged, or why it never was.
    """

    def __init__(self, device_id: str, logger: Optional[logging.Logger] = None):
        self.device_id = device_id
        self.logger = logger or logging.getLogger(DECISION_LOGGER_NAME)

    def log_created(self, record) -> None:
        """Log a decision at the moment it is made."""
        similarity = "n/a" if record.similarity is None else f"{record.similarity:.4f}"
        self.logger.info(
            f"Decision {record.decision.value}: {record.event_id} "
            f"identity={record.identity_id} similarity={similarity}",
            extra={
                "decision_action": "created",
                "event_id": record.event_id,
                "decision": record.decision.value,
                "identity_id": record.identity_id,
                "similarity": record.similarity,
                "mode": record.mode.value,
                "model_version": record.model_version,
                "latency_ms": record.latency_ms,
                "reason": record.reason,
            }
        )

    def log_enqueued(self, event_id: str, queue_depth: Optional[int] = None) -> None:
        self.logger.debug(
            f"Decision enqueued: {event_id}",
            extra={
                "decision_action": "enqueued",
                "event_id": event_id,
                "queue_depth": queue_depth,
            }
        )

    def log_sent(self, event_id: str, endpoint: str, attempt: int) -> None:
        self.logger.info(
            f"Decision sent: {event_id} -> {endpoint} (attempt {attempt})",
            extra={
                "decision_action": "sent",
                "event_id": event_id,
                "endpoint": endpoint,
                "attempt": attempt,
            }
        )

    def log_acknowledged(
        self,
        event_id: str,
        via: str,
        response_time_ms: Optional[float] = None,
    ) -> None:
        """Log a backend acknowledgment."""
        self.logger.info(
            f"Decision acknowledged: {event_id} via {via}",
            extra={
                "decision_action": "acknowledged",
                "event_id": event_id,
                "via": via,
                "acknowledged_at": _utc_iso(),
                "response_time_ms": response_time_ms,
            }
        )

    def log_failed(
        self,
        event_id: str,
        error: str,
        attempt: int,
        next_attempt_at: Optional[float] = None,
    ) -> None:
        self.logger.warning(
            f"Decision delivery failed: {event_id} - {error}",
            extra={
                "decision_action": "failed",
                "event_id": event_id,
                "error": error,
                "attempt": attempt,
                "next_attempt_at": next_attempt_at,
            }
        )

    def log_rejected(self, event_id: str, error: str) -> None:
        """Log a terminal rejection; the record is archived, not retried."""
        self.logger.error(
            f"Decision rejected by backend: {event_id} - {error}",
            extra={
                "decision_action": "rejected",
                "event_id": event_id,
                "error": error,
            }
        )

    def log_fallback(self, event_id: str, payload_size: int, uplink: str) -> None:
        self.logger.info(
            f"Decision sent via fallback: {event_id} ({payload_size} bytes, {uplink})",
            extra={
                "decision_action": "fallback",
                "event_id": event_id,
                "payload_size_bytes": payload_size,
                "uplink": uplink,
            }
        )


def setup_logging(
    device_id: str,
    log_dir: str = "logs",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    json_logs: bool = True,
) -> logging.Logger:
    """
    Configure logging for the agent.

    Args:
        device_id: Device identifier for log context
        log_dir: Directory for log files
        console_level: Console output log level
        file_level: File output log level
        json_logs: If True, use JSON format for file logs

    Returns:
        Root logger
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    # Console handler - human readable
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_formatter = logging.Formatter(
        '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    timestamp = datetime.now().strftime("%Y%m%d")
    decision_logger = logging.getLogger(DECISION_LOGGER_NAME)
    decision_logger.handlers.clear()

    if json_logs:
        json_file = log_path / f"agent_{timestamp}.jsonl"
        json_handler = logging.FileHandler(json_file, encoding='utf-8')
        json_handler.setLevel(file_level)
        json_handler.setFormatter(StructuredFormatter(device_id=device_id))
        root_logger.addHandler(json_handler)

        # Separate decision log for easy filtering
        decision_file = log_path / f"decisions_{timestamp}.jsonl"
        decision_handler = logging.FileHandler(decision_file, encoding='utf-8')
        decision_handler.setLevel(logging.DEBUG)
        decision_handler.setFormatter(StructuredFormatter(device_id=device_id))
        decision_logger.addHandler(decision_handler)
    else:
        text_file = log_path / f"agent_{timestamp}.log"
        text_handler = logging.FileHandler(text_file, encoding='utf-8')
        text_handler.setLevel(file_level)
        text_handler.setFormatter(console_formatter)
        root_logger.addHandler(text_handler)

    return root_logger


def build_status_fields(health_snapshot: Dict[str, Any]) -> Dict[str, Any]:
    """
    Flatten a health snapshot into the fields of a [STATUS] log line.

    Args:
        health_snapshot: Output of HealthMonitor.snapshot()

    Returns:
        Flat dict of counter and gauge values
    """
    fields: Dict[str, Any] = {"uptime_seconds": health_snapshot.get("uptime_seconds", 0)}
    for name, value in sorted(health_snapshot.get("gauges", {}).items()):
        fields[name] = value
    for name, value in sorted(health_snapshot.get("counters", {}).items()):
        fields[name] = value
    return fields
