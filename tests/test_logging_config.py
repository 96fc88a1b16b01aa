import json
import logging

from access_edge.health import HealthMonitor
from access_edge.logging_config import (
    DecisionLogger,
    StructuredFormatter,
    build_status_fields,
    setup_logging,
)
from access_edge.schemas.decision_schemas import Decision, DecisionRecord

from conftest import DEVICE_ID, MODEL


def test_structured_formatter_emits_json_with_extra():
    record = logging.LogRecord("access_edge.test", logging.INFO, __file__, 10,
                               "hello %s", ("world",), None)
    record.event_id = "abc"
    entry = json.loads(StructuredFormatter(device_id=DEVICE_ID).format(record))

    assert entry["message"] == "hello world"
    assert entry["device_id"] == DEVICE_ID
    assert entry["level"] == "INFO"
    assert entry["extra"]["event_id"] == "abc"


def test_setup_logging_writes_decision_log(tmp_path, restore_logging):
    setup_logging(DEVICE_ID, log_dir=str(tmp_path), json_logs=True)
    decisions = DecisionLogger(DEVICE_ID)
    record = DecisionRecord(decision=Decision.DENY, model_version=MODEL)

    decisions.log_created(record)
    decisions.log_acknowledged(record.event_id, "primary", 12.5)
    for handler in logging.getLogger(decisions.logger.name).handlers:
        handler.flush()

    decision_files = list(tmp_path.glob("decisions_*.jsonl"))
    assert len(decision_files) == 1
    lines = [json.loads(line) for line in decision_files[0].read_text().splitlines()]
    assert [line["extra"]["decision_action"] for line in lines] == ["created", "acknowledged"]
    assert all(line["extra"]["event_id"] == record.event_id for line in lines)
    assert lines[0]["extra"]["similarity"] is None


def test_setup_logging_plain_text(tmp_path, restore_logging):
    setup_logging(DEVICE_ID, log_dir=str(tmp_path), json_logs=False)
    logging.getLogger("access_edge.test").info("plain line")
    for handler in logging.getLogger().handlers:
        handler.flush()

    [text_file] = list(tmp_path.glob("agent_*.log"))
    assert "plain line" in text_file.read_text()


def test_status_fields_flatten_health():
    health = HealthMonitor()
    health.increment("frames_captured", 3)
    health.set_gauge("queue_depth", 7)

    fields = build_status_fields(health.snapshot())
    assert fields["frames_captured"] == 3
    assert fields["queue_depth"] == 7
    assert "uptime_seconds" in fields
