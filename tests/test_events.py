import json
import logging

from product_video import metrics
from product_video.logging_setup import JsonFormatter
from product_video.pipeline.events import LoggingEventSink


def test_state_changes_feed_counters_and_latency():
    sink = LoggingEventSink()

    sink.emit("job.state_changed", job_id="j1", from_status="processing", to="done", duration_ms=1200)
    sink.emit("job.state_changed", job_id="j2", from_status="processing", to="failed", error="boom")
    sink.emit("job.created", job_id="j3")

    snapshot = metrics.get_snapshot()
    assert snapshot["counters"] == {"jobs.done": 1, "jobs.failed": 1, "job.created": 1}
    assert snapshot["latency"]["jobs.done"]["count"] == 1
    assert snapshot["recent_errors"][0]["job_id"] == "j2"


def test_delivery_events_log_as_warnings(caplog):
    with caplog.at_level(logging.INFO, logger="product_video.events"):
        LoggingEventSink().emit("delivery.rejected", reason="missing signature")

    record = caplog.records[0]
    assert record.levelno == logging.WARNING
    assert record.reason == "missing signature"


def test_json_formatter_includes_extra_fields():
    record = logging.makeLogRecord({
        "name": "product_video.events", "levelname": "INFO", "msg": "job.created",
        "event": "job.created", "job_id": "j1",
    })

    entry = json.loads(JsonFormatter().format(record))

    assert entry["message"] == "job.created"
    assert entry["level"] == "info"
    assert entry["job_id"] == "j1"
    assert entry["service"]
    assert "args" not in entry
