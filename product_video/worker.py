"""
Redis queue consumer threads.

Each consumer loops: promote due retries → dequeue (BLMOVE) → handler →
ack on success, nack on failure. A nack that exhausts the attempt budget
dead-letters the delivery and hands it to `on_dead_letter`.
"""

import logging
import threading
import time
from typing import Optional

from . import config
from . import queue as task_queue
from .dispatch import DeadLetterHandler, DeliveryHandler
from .pipeline.models import DeliveryPayload

logger = logging.getLogger(__name__)

RECOVERY_INTERVAL_SECONDS = 60


class QueueWorker:
    """
    Usage:
        worker = QueueWorker(redis_client, processor.process, on_dead_letter=...)
        worker.start()
        ...
        worker.stop()
    """

    def __init__(
        self,
        redis_client,
        handler: DeliveryHandler,
        on_dead_letter: Optional[DeadLetterHandler] = None,
        concurrency: int = config.WORKER_CONCURRENCY,
        max_attempts: int = config.DELIVERY_MAX_ATTEMPTS,
        dequeue_timeout: int = 5,
    ):
        self.redis = redis_client
        self.handler = handler
        self.on_dead_letter = on_dead_letter
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.dequeue_timeout = dequeue_timeout
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self):
        recovered = task_queue.recover_stale_tasks(self.redis)
        if recovered:
            logger.info(f"Recovered {recovered} stale delivery(ies) from previous session")

        self._stop.clear()
        for i in range(self.concurrency):
            t = threading.Thread(target=self._loop, name=f"queue-consumer-{i}", daemon=True)
            t.start()
            self._threads.append(t)

        recovery = threading.Thread(target=self._recovery_loop, name="queue-recovery", daemon=True)
        recovery.start()
        self._threads.append(recovery)
        logger.info(f"Queue consumer launched ({self.concurrency} thread(s), reliable mode)")

    def stop(self, timeout: float = 10.0):
        self._stop.set()
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads = []

    # ── Loops ────────────────────────────────────────────────────────────

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Queue consumer loop error: {e}", exc_info=True)
                time.sleep(2)

    def _recovery_loop(self):
        while not self._stop.wait(RECOVERY_INTERVAL_SECONDS):
            try:
                task_queue.recover_stale_tasks(self.redis)
            except Exception as e:
                logger.error(f"Stale delivery recovery failed: {e}")

    def run_once(self) -> bool:
        """Handle at most one delivery. Returns False when the queue was empty."""
        task_queue.promote_due_tasks(self.redis)

        job_id = task_queue.dequeue_task(self.redis, timeout=self.dequeue_timeout)
        if job_id is None:
            return False

        raw = task_queue.get_task_payload(self.redis, job_id)
        if raw is None:
            logger.warning(f"Queue consumer: no metadata for job {job_id}, skipping")
            task_queue.ack_task(self.redis, job_id)
            return True

        payload = None
        try:
            payload = DeliveryPayload.model_validate(raw)
            self.handler(payload)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.warning(f"Queue consumer: delivery of job {job_id} failed: {error}")
            result = task_queue.nack_task(self.redis, job_id, error, max_attempts=self.max_attempts)
            if result == task_queue.DEAD_LETTER and payload is not None and self.on_dead_letter is not None:
                self.on_dead_letter(payload, self.max_attempts, error)
        else:
            task_queue.ack_task(self.redis, job_id)
        return True
