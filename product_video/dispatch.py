"""
Dispatch Queue adapters.

A dispatcher accepts `enqueue(job_id, account_id, image_refs, template_id)`
and guarantees at-least-once delivery of the payload to a handler:

  RedisDispatchQueue   pushes onto the reliable Redis queue; a QueueWorker
                       consumes it (see worker.py).
  LocalDispatchQueue   in-process fallback when Redis is not configured.
                       Same retry/backoff/dead-letter contract, no persistence.

The handler is either the JobProcessor directly (local mode) or a
CallbackDeliverer that POSTs the signed payload to the worker webhook (push
mode). A handler signals a failed delivery by raising.
"""

import json
import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

import httpx

from . import config
from . import queue as task_queue
from .pipeline.events import EventSink, LoggingEventSink
from .pipeline.job_store import JobStore
from .pipeline.models import DeliveryPayload
from .signing import SIGNATURE_HEADER, DeliverySigner

logger = logging.getLogger(__name__)

DeliveryHandler = Callable[[DeliveryPayload], object]
DeadLetterHandler = Callable[[DeliveryPayload, int, str], None]

# The webhook runs the whole poll loop before answering
CALLBACK_TIMEOUT_SECONDS = config.POLL_INTERVAL_SECONDS * config.MAX_POLL_ATTEMPTS + 60

# Recent in-process dead letters kept for /queue/status
MAX_DEAD_LETTER_ENTRIES = 100


def build_payload(job_id: str, account_id: str, image_refs: list[str], template_id: str) -> DeliveryPayload:
    return DeliveryPayload(
        job_id=job_id, account_id=account_id,
        source_image_urls=list(image_refs), template_id=template_id,
    )


def encode_payload(payload: DeliveryPayload) -> bytes:
    return json.dumps(payload.model_dump(by_alias=True), separators=(",", ":")).encode("utf-8")


# ── Redis ────────────────────────────────────────────────────────────────────

class RedisDispatchQueue:
    def __init__(self, redis_client):
        self.redis = redis_client

    def enqueue(self, job_id: str, account_id: str, image_refs: list[str], template_id: str) -> None:
        payload = build_payload(job_id, account_id, image_refs, template_id)
        task_queue.enqueue_task(
            self.redis, job_id, account_id, payload.model_dump(by_alias=True),
        )

    def status(self, job_id: str) -> dict:
        position = task_queue.get_queue_position(self.redis, job_id)
        meta = task_queue.get_task_meta(self.redis, job_id)
        return {
            "position": position or 0,
            "queue_length": task_queue.get_queue_length(self.redis),
            "status": meta.get("status", "unknown") if meta else "not_found",
            "retries": int(meta.get("retries", 0)) if meta else 0,
        }

    def gauges(self) -> dict:
        return {
            "queue_depth": task_queue.get_queue_length(self.redis),
            "processing_count": task_queue.get_processing_count(self.redis),
            "delayed_count": task_queue.get_delayed_count(self.redis),
            "dead_letter_count": len(task_queue.get_dead_letter_jobs(self.redis)),
        }


# ── In-process fallback ──────────────────────────────────────────────────────

class LocalDispatchQueue:
    """
    Thread-pool dispatcher used when Redis is unreachable.

    Deliveries are retried with the same exponential backoff as the Redis
    queue; after `max_attempts` failures `on_dead_letter` is called. State is
    lost on restart; the reconcile sweep picks up whatever was in flight.
    """

    def __init__(
        self,
        handler: DeliveryHandler,
        on_dead_letter: Optional[DeadLetterHandler] = None,
        concurrency: int = config.WORKER_CONCURRENCY,
        max_attempts: int = config.DELIVERY_MAX_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
        delay: Callable[[int], float] = task_queue.retry_delay,
    ):
        self.handler = handler
        self.on_dead_letter = on_dead_letter
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._delay = delay
        self._executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="dispatch")
        self._lock = threading.Lock()
        self._pending: dict[str, str] = {}  # job_id → status
        self._dead_letter: deque = deque(maxlen=MAX_DEAD_LETTER_ENTRIES)

    def enqueue(self, job_id: str, account_id: str, image_refs: list[str], template_id: str) -> None:
        payload = build_payload(job_id, account_id, image_refs, template_id)
        with self._lock:
            self._pending[job_id] = "queued"
        logger.info(f"Enqueued job {job_id} for account {account_id} (in-process)")
        self._executor.submit(self._deliver, payload)

    def _deliver(self, payload: DeliveryPayload):
        job_id = payload.job_id
        for attempt in range(1, self.max_attempts + 1):
            self._set_status(job_id, "processing")
            try:
                self.handler(payload)
            except Exception as e:
                error = str(e) or e.__class__.__name__
                if attempt < self.max_attempts:
                    delay = self._delay(attempt)
                    logger.warning(
                        f"Delivery of job {job_id} failed (attempt {attempt}/{self.max_attempts}), "
                        f"retry in {delay:.1f}s: {error}"
                    )
                    self._set_status(job_id, "retrying")
                    self._sleep(delay)
                    continue

                logger.error(f"Job {job_id} dead-lettered after {attempt} attempts: {error}")
                with self._lock:
                    self._pending.pop(job_id, None)
                    self._dead_letter.append(job_id)
                if self.on_dead_letter is not None:
                    try:
                        self.on_dead_letter(payload, attempt, error)
                    except Exception:
                        logger.exception(f"Dead-letter handler failed for job {job_id}")
                return
            else:
                with self._lock:
                    self._pending.pop(job_id, None)
                return

    def _set_status(self, job_id: str, status: str):
        with self._lock:
            self._pending[job_id] = status

    def status(self, job_id: str) -> dict:
        with self._lock:
            task_status = self._pending.get(job_id)
            if task_status is None:
                task_status = "dead_letter" if job_id in self._dead_letter else "not_found"
            queue_length = sum(1 for s in self._pending.values() if s == "queued")
        return {"position": 0, "queue_length": queue_length, "status": task_status, "retries": 0}

    def gauges(self) -> dict:
        with self._lock:
            queued = sum(1 for s in self._pending.values() if s == "queued")
            return {
                "queue_depth": queued,
                "processing_count": len(self._pending) - queued,
                "dead_letter_count": len(self._dead_letter),
            }

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)


# ── Push delivery ────────────────────────────────────────────────────────────

class CallbackDeliverer:
    """
    Delivery handler for push mode: signs the payload and POSTs it to the
    processing webhook. Any non-2xx answer or transport error raises, which
    the queue turns into a retry.
    """

    def __init__(
        self,
        url: str = config.PROCESS_CALLBACK_URL,
        signer: Optional[DeliverySigner] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = CALLBACK_TIMEOUT_SECONDS,
    ):
        if not url:
            raise ValueError("PROCESS_CALLBACK_URL must be set for push delivery")
        self.url = url
        self.signer = signer or DeliverySigner()
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout)

    def __call__(self, payload: DeliveryPayload) -> None:
        body = encode_payload(payload)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: self.signer.sign(body, self.url),
        }
        resp = self.client.post(self.url, content=body, headers=headers)
        resp.raise_for_status()
        logger.info(f"Delivered job {payload.job_id} → {self.url} ({resp.status_code})")

    def close(self):
        if self._owns_client:
            self.client.close()


# ── Dead-letter handling ─────────────────────────────────────────────────────

def fail_dead_lettered(store: JobStore, events: Optional[EventSink] = None) -> DeadLetterHandler:
    """Build an on_dead_letter callback that records the lost delivery on the job."""
    events = events or LoggingEventSink()

    def _handle(payload: DeliveryPayload, attempts: int, error: str) -> None:
        events.emit(
            "delivery.dead_lettered", job_id=payload.job_id,
            account_id=payload.account_id, attempts=attempts, error=error,
        )
        message = f"Delivery failed after {attempts} attempts: {error}"
        job = store.get_job(payload.job_id)
        if job is None or job.status.is_terminal:
            return
        if store.fail_job(payload.job_id, message):
            events.emit(
                "job.state_changed", job_id=payload.job_id, account_id=payload.account_id,
                template_id=payload.template_id, from_status=job.status.value, to="failed", error=message,
            )

    return _handle
