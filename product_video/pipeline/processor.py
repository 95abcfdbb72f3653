"""
JobProcessor: drives one delivered job to a terminal state.

  queued ──claim──▶ processing ──start──▶ poll loop ──▶ done | failed

Rules:
  - `processing` is persisted before the generation service is called.
  - Every poll uses the handle returned by the previous poll; the handle's
    token and the attempt count are written back after each poll and double
    as the job's heartbeat.
  - Anything that goes wrong after the claim is recorded on the job as
    `failed` with a message. The usage counter only moves in `complete_job`.
  - A delivery for a job that is already terminal, or `processing` with a
    live heartbeat, changes nothing. A `processing` job whose heartbeat went
    stale is taken over and polling resumes from the persisted token.
"""

import logging
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from .. import config
from .errors import PollError
from .events import EventSink, LoggingEventSink
from .generation import GenerationClient, PollResult, VideoPublisher
from .job_store import JobStore
from .models import DeliveryPayload, JobStatus, VideoJob, utc_now
from .templates import DEFAULT_ASPECT_RATIO, get_template

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Video generation timed out"
INTERRUPTED_MESSAGE = "Processing interrupted before generation started"


class Outcome(str, Enum):
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"        # redelivery or lost a race; nothing changed
    NOT_FOUND = "not_found"


class JobProcessor:
    """
    Usage:
        processor = JobProcessor(store, VeoClient())
        outcome = processor.process(payload)
    """

    def __init__(
        self,
        store: JobStore,
        client: GenerationClient,
        events: Optional[EventSink] = None,
        publisher: Optional[VideoPublisher] = None,
        poll_interval: float = config.POLL_INTERVAL_SECONDS,
        max_poll_attempts: int = config.MAX_POLL_ATTEMPTS,
        stale_after_seconds: int = config.STALE_PROCESSING_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.client = client
        self.events = events or LoggingEventSink()
        self.publisher = publisher
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self._sleep = sleep
        self._clock = clock

    # ── Entry point ──────────────────────────────────────────────────────

    def process(self, payload: DeliveryPayload) -> Outcome:
        job = self.store.get_job(payload.job_id)
        if job is None:
            logger.warning(f"[{payload.job_id}] delivery for unknown job, dropping")
            return Outcome.NOT_FOUND

        if job.status.is_terminal:
            self._redelivered(job, "terminal")
            return Outcome.SKIPPED

        if job.status == JobStatus.PROCESSING:
            return self._take_over(job)

        if not self.store.claim_job(job.id):
            # Another worker claimed it between our read and the update
            self._redelivered(job, "claimed_elsewhere")
            return Outcome.SKIPPED

        self._state_changed(job, JobStatus.QUEUED, JobStatus.PROCESSING)
        return self._run(job)

    # ── Fresh run ────────────────────────────────────────────────────────

    def _run(self, job: VideoJob) -> Outcome:
        started = time.monotonic()

        template = get_template(job.template_id)
        if template is None:
            return self._fail(job, f"Template not found: {job.template_id}", started)

        logger.info(
            f"[{job.id}] starting generation template={job.template_id} "
            f"images={len(job.source_image_urls)}"
        )
        try:
            handle = self.client.start(
                prompt=template["prompt"],
                reference_images=job.source_image_urls,
                duration_seconds=template["duration"],
                aspect_ratio=template.get("aspect_ratio", DEFAULT_ASPECT_RATIO),
            )
        except Exception as e:
            logger.error(f"[{job.id}] generation start failed: {e}", exc_info=True)
            return self._fail(job, str(e) or e.__class__.__name__, started)

        self.store.record_progress(job.id, self.client.handle_token(handle), 0)
        return self._poll_until_done(job, handle, 0, started)

    # ── Redelivery of a processing job ───────────────────────────────────

    def _take_over(self, job: VideoJob) -> Outcome:
        stale_before = self._clock() - self.stale_after
        if job.updated_at >= stale_before:
            self._redelivered(job, "in_progress")
            return Outcome.SKIPPED

        if not self.store.claim_stale_job(job.id, stale_before):
            self._redelivered(job, "claimed_elsewhere")
            return Outcome.SKIPPED

        started = time.monotonic()
        if not job.operation_token:
            return self._fail(job, INTERRUPTED_MESSAGE, started)

        logger.warning(
            f"[{job.id}] heartbeat stale since {job.updated_at.isoformat()}, "
            f"resuming at poll {job.poll_attempts + 1}/{self.max_poll_attempts}"
        )
        handle = self.client.restore_handle(job.operation_token)
        return self._poll_until_done(job, handle, job.poll_attempts, started)

    # ── Poll loop ────────────────────────────────────────────────────────

    def _poll_until_done(self, job: VideoJob, handle: Any, attempts_used: int, started: float) -> Outcome:
        for attempt in range(attempts_used + 1, self.max_poll_attempts + 1):
            try:
                result = self.client.poll(handle)
            except PollError as e:
                # Lost attempt; still counts against the budget
                logger.warning(f"[{job.id}] poll {attempt}/{self.max_poll_attempts} failed: {e}")
                self.events.emit("job.poll_attempt", job_id=job.id, attempt=attempt, ok=False)
            except Exception as e:
                logger.error(f"[{job.id}] poll {attempt} returned an unusable response: {e}", exc_info=True)
                return self._fail(job, str(e) or e.__class__.__name__, started)
            else:
                if result.handle is not None:
                    handle = result.handle
                self.events.emit(
                    "job.poll_attempt", job_id=job.id, attempt=attempt, ok=True, done=result.done,
                )
                if result.done:
                    return self._finish(job, result, started)

            self.store.record_progress(job.id, self.client.handle_token(handle), attempt)

            if attempt % 6 == 0:
                logger.info(f"[{job.id}] still generating ({attempt}/{self.max_poll_attempts})")

            if attempt < self.max_poll_attempts:
                self._sleep(self.poll_interval)

        return self._fail(
            job, f"{TIMEOUT_MESSAGE} after {self.max_poll_attempts} poll attempts", started,
        )

    def _finish(self, job: VideoJob, result: PollResult, started: float) -> Outcome:
        if result.error_message:
            return self._fail(job, result.error_message, started)
        if not result.video_ref:
            return self._fail(job, "No video URL in response", started)

        try:
            video_url = self.client.resolve_playback_url(result.video_ref)
            if self.publisher is not None:
                video_url = self.publisher.publish(job.id, video_url)
        except Exception as e:
            logger.error(f"[{job.id}] could not publish finished video: {e}", exc_info=True)
            return self._fail(job, f"Failed to publish video: {e}", started)

        if not self.store.complete_job(job.id, video_url):
            logger.warning(f"[{job.id}] no longer processing, discarding result {result.video_ref}")
            return Outcome.SKIPPED

        self._state_changed(
            job, JobStatus.PROCESSING, JobStatus.DONE,
            video_url=video_url, duration_ms=_elapsed_ms(started),
        )
        return Outcome.DONE

    # ── Helpers ──────────────────────────────────────────────────────────

    def _fail(self, job: VideoJob, message: str, started: float) -> Outcome:
        if not self.store.fail_job(job.id, message):
            logger.warning(f"[{job.id}] could not record failure, job already terminal: {message}")
            return Outcome.SKIPPED
        self._state_changed(
            job, JobStatus.PROCESSING, JobStatus.FAILED,
            error=message, duration_ms=_elapsed_ms(started),
        )
        return Outcome.FAILED

    def _state_changed(self, job: VideoJob, from_status: JobStatus, to_status: JobStatus, **fields):
        self.events.emit(
            "job.state_changed",
            job_id=job.id,
            account_id=job.account_id,
            template_id=job.template_id,
            from_status=from_status.value,
            to=to_status.value,
            **fields,
        )

    def _redelivered(self, job: VideoJob, reason: str):
        self.events.emit(
            "job.redelivered", job_id=job.id, status=job.status.value, reason=reason,
        )


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000
