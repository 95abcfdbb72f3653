"""
Structured pipeline events.

The processor and request service report what happens to a job through an
EventSink instead of talking to a telemetry backend directly:

  job.created          a request was accepted and queued
  job.state_changed    queued → processing → done | failed
  job.poll_attempt     one status check against the generation service
  job.redelivered      a delivery arrived for a job that was already picked up
  delivery.rejected    a callback failed signature verification
  delivery.dead_lettered  the delivery retry budget ran out
"""

import logging
from typing import Protocol

from .. import metrics

logger = logging.getLogger("product_video.events")


class EventSink(Protocol):
    def emit(self, event: str, **fields) -> None: ...


class LoggingEventSink:
    """Writes each event as a log record and keeps the metrics counters current."""

    def emit(self, event: str, **fields) -> None:
        level = logging.WARNING if event.startswith("delivery.") else logging.INFO
        if event == "job.poll_attempt":
            level = logging.DEBUG
        logger.log(level, event, extra={"event": event, **fields})

        if event == "job.state_changed":
            metrics.inc_counter(f"jobs.{fields.get('to')}")
            if "duration_ms" in fields:
                metrics.record_latency(f"jobs.{fields['to']}", fields["duration_ms"])
            if fields.get("to") == "failed":
                metrics.record_error(
                    "processor", "job_failed",
                    str(fields.get("error", "")), fields.get("job_id", ""),
                )
        else:
            metrics.inc_counter(event)
