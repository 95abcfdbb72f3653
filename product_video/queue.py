"""
Redis-backed delivery queue with at-least-once semantics.

Reliable-queue pattern, so a delivery is never in limbo:
  1. LPUSH → `videoqueue:jobs`             (enqueue)
  2. BLMOVE → `videoqueue:processing`      (atomic dequeue + in-flight tracking)
  3. LREM from processing on success        (ack)
  4. ZADD → `videoqueue:delayed` with backoff, or → `videoqueue:dead_letter`
     once the attempt budget is spent       (nack)

Keys:
  videoqueue:jobs             pending deliveries (list, FIFO)
  videoqueue:processing       in-flight deliveries (list)
  videoqueue:delayed          retries waiting out their backoff (zset, score = due time)
  videoqueue:dead_letter      deliveries that ran out of attempts (list)
  videoqueue:meta:{job_id}    per-delivery metadata (hash, TTL 24h)
"""

import json
import logging
import random
import time
from typing import Optional

from . import config

logger = logging.getLogger(__name__)

QUEUE_KEY = "videoqueue:jobs"
PROCESSING_KEY = "videoqueue:processing"
DELAYED_KEY = "videoqueue:delayed"
DEAD_LETTER_KEY = "videoqueue:dead_letter"
META_PREFIX = "videoqueue:meta:"
META_TTL = 86400  # 24 hours

# Must outlive one full poll loop (60 × 5s) with margin
STALE_TASK_TIMEOUT = config.STALE_PROCESSING_SECONDS

REQUEUED = "requeued"
DEAD_LETTER = "dead_letter"


def _str(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


def retry_delay(retries: int, base: float = config.DELIVERY_BASE_DELAY_SECONDS) -> float:
    """Exponential backoff before the next delivery attempt, with a little jitter."""
    return base * (2 ** (retries - 1)) + random.uniform(0, base / 2)


# ── Enqueue ───────────────────────────────────────────────────────────────────

def enqueue_task(redis_client, job_id: str, account_id: str, payload: dict) -> int:
    """
    Add a delivery to the back of the queue.
    Returns the queue position (1-based).
    """
    meta = {
        "account_id": account_id,
        "job_id": job_id,
        "payload": json.dumps(payload),
        "enqueued_at": str(time.time()),
        "status": "queued",
        "retries": "0",
    }

    pipe = redis_client.pipeline(transaction=True)

    meta_key = f"{META_PREFIX}{job_id}"
    pipe.hset(meta_key, mapping=meta)
    pipe.expire(meta_key, META_TTL)

    # LPUSH = new items go to the left; pop from the right = FIFO
    pipe.lpush(QUEUE_KEY, job_id)
    pipe.execute()

    position = redis_client.llen(QUEUE_KEY)
    logger.info(f"Enqueued job {job_id} for account {account_id} (pos={position})")
    return position


# ── Reliable Dequeue ──────────────────────────────────────────────────────────

def dequeue_task(redis_client, timeout: int = 5) -> Optional[str]:
    """
    Atomically move a delivery from the pending queue to the processing list.
    If the worker crashes, `recover_stale_tasks()` moves it back.

    Returns the job_id or None on timeout.
    """
    try:
        result = redis_client.blmove(
            QUEUE_KEY, PROCESSING_KEY,
            timeout=timeout,
            src="RIGHT", dest="LEFT",
        )
    except (AttributeError, TypeError):
        # redis-py without blmove
        result = redis_client.brpoplpush(QUEUE_KEY, PROCESSING_KEY, timeout=timeout)

    if result is None:
        return None

    job_id = _str(result)

    meta_key = f"{META_PREFIX}{job_id}"
    redis_client.hset(meta_key, mapping={
        "processing_started_at": str(time.time()),
        "status": "processing",
    })

    logger.info(f"Dequeued job {job_id} → processing")
    return job_id


def get_task_payload(redis_client, job_id: str) -> Optional[dict]:
    raw = redis_client.hget(f"{META_PREFIX}{job_id}", "payload")
    if raw is None:
        return None
    return json.loads(_str(raw))


# ── Ack / Nack ────────────────────────────────────────────────────────────────

def ack_task(redis_client, job_id: str):
    """Acknowledge a handled delivery: remove it from the processing list."""
    redis_client.lrem(PROCESSING_KEY, 1, job_id)
    update_task_status(redis_client, job_id, "completed")
    logger.info(f"Acked job {job_id}")


def nack_task(
    redis_client,
    job_id: str,
    error_msg: str = "",
    max_attempts: int = config.DELIVERY_MAX_ATTEMPTS,
    now: Optional[float] = None,
) -> str:
    """
    Negative-acknowledge a failed delivery.
    Schedules a delayed retry while attempts remain, otherwise dead-letters it.
    Returns REQUEUED or DEAD_LETTER.
    """
    meta_key = f"{META_PREFIX}{job_id}"
    retries = redis_client.hincrby(meta_key, "retries", 1)

    if error_msg:
        redis_client.hset(meta_key, "last_error", error_msg[:500])

    redis_client.lrem(PROCESSING_KEY, 1, job_id)

    if retries < max_attempts:
        delay = retry_delay(retries)
        due = (now if now is not None else time.time()) + delay
        redis_client.zadd(DELAYED_KEY, {job_id: due})
        update_task_status(redis_client, job_id, "retrying")
        logger.warning(
            f"Nacked job {job_id} (attempt {retries}/{max_attempts}), retry in {delay:.1f}s"
        )
        return REQUEUED

    redis_client.lpush(DEAD_LETTER_KEY, job_id)
    update_task_status(redis_client, job_id, "dead_letter")
    logger.error(f"Job {job_id} moved to dead-letter queue after {retries} attempts: {error_msg}")
    return DEAD_LETTER


def promote_due_tasks(redis_client, now: Optional[float] = None) -> int:
    """Move delayed retries whose backoff has elapsed back onto the pending queue."""
    now = now if now is not None else time.time()
    due = redis_client.zrangebyscore(DELAYED_KEY, "-inf", now)
    promoted = 0
    for item in due:
        job_id = _str(item)
        # ZREM wins the race when several consumers promote at once
        if redis_client.zrem(DELAYED_KEY, job_id):
            redis_client.lpush(QUEUE_KEY, job_id)
            update_task_status(redis_client, job_id, "queued")
            promoted += 1
    return promoted


# ── Stale Task Recovery ───────────────────────────────────────────────────────

def recover_stale_tasks(redis_client, now: Optional[float] = None) -> int:
    """
    Move deliveries that have been in-flight longer than STALE_TASK_TIMEOUT
    (crashed consumers) back to the pending queue.

    Call this on worker startup and periodically.
    Returns the number of recovered deliveries.
    """
    processing_items = redis_client.lrange(PROCESSING_KEY, 0, -1)
    recovered = 0
    now = now if now is not None else time.time()

    for item in processing_items:
        job_id = _str(item)
        meta = get_task_meta(redis_client, job_id)

        if not meta:
            redis_client.lrem(PROCESSING_KEY, 1, job_id)
            logger.warning(f"Removed orphaned job {job_id} from processing (no metadata)")
            continue

        started_at = float(meta.get("processing_started_at", 0))
        if started_at > 0 and (now - started_at) > STALE_TASK_TIMEOUT:
            redis_client.lrem(PROCESSING_KEY, 1, job_id)
            redis_client.lpush(QUEUE_KEY, job_id)
            update_task_status(redis_client, job_id, "queued")
            recovered += 1
            logger.warning(
                f"Recovered stale job {job_id} (in-flight {int(now - started_at)}s > {STALE_TASK_TIMEOUT}s)"
            )

    if recovered:
        logger.info(f"Recovered {recovered} stale task(s) from processing queue")
    return recovered


# ── Dead-Letter Inspection ────────────────────────────────────────────────────

def get_dead_letter_jobs(redis_client, limit: int = 50) -> list:
    """Return the most recent dead-letter job IDs."""
    return [_str(item) for item in redis_client.lrange(DEAD_LETTER_KEY, 0, limit - 1)]


# ── Metadata Helpers ──────────────────────────────────────────────────────────

def get_queue_position(redis_client, job_id: str) -> Optional[int]:
    """
    1-based position of a job in the pending queue, or None when it is not
    waiting (in flight, delayed or finished).
    """
    queue_items = redis_client.lrange(QUEUE_KEY, 0, -1)

    for i, item in enumerate(queue_items):
        if _str(item) == job_id:
            # Rightmost = next
            return len(queue_items) - i

    return None


def get_queue_length(redis_client) -> int:
    return redis_client.llen(QUEUE_KEY)


def get_processing_count(redis_client) -> int:
    return redis_client.llen(PROCESSING_KEY)


def get_delayed_count(redis_client) -> int:
    return redis_client.zcard(DELAYED_KEY)


def get_task_meta(redis_client, job_id: str) -> Optional[dict]:
    """Metadata for a queued/processing delivery."""
    data = redis_client.hgetall(f"{META_PREFIX}{job_id}")
    if not data:
        return None
    return {_str(k): _str(v) for k, v in data.items()}


def update_task_status(redis_client, job_id: str, status: str):
    redis_client.hset(f"{META_PREFIX}{job_id}", "status", status)
