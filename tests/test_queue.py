import time

import fakeredis
import pytest

from product_video import queue as task_queue


@pytest.fixture
def r():
    return fakeredis.FakeRedis()


def _enqueue(r, job_id, account_id="shop-1"):
    return task_queue.enqueue_task(r, job_id, account_id, {"jobId": job_id, "accountId": account_id})


def test_fifo_order_and_positions(r):
    assert _enqueue(r, "job-a") == 1
    assert _enqueue(r, "job-b") == 2

    assert task_queue.get_queue_position(r, "job-a") == 1
    assert task_queue.get_queue_position(r, "job-b") == 2
    assert task_queue.dequeue_task(r, timeout=1) == "job-a"
    assert task_queue.get_queue_position(r, "job-a") is None


def test_dequeue_tracks_in_flight(r):
    _enqueue(r, "job-a")

    job_id = task_queue.dequeue_task(r, timeout=1)

    assert task_queue.get_processing_count(r) == 1
    assert task_queue.get_task_meta(r, job_id)["status"] == "processing"
    assert task_queue.get_task_payload(r, job_id) == {"jobId": "job-a", "accountId": "shop-1"}


def test_ack_clears_in_flight(r):
    _enqueue(r, "job-a")
    task_queue.dequeue_task(r, timeout=1)

    task_queue.ack_task(r, "job-a")

    assert task_queue.get_processing_count(r) == 0
    assert task_queue.get_task_meta(r, "job-a")["status"] == "completed"


def test_nack_schedules_delayed_retry(r):
    _enqueue(r, "job-a")
    task_queue.dequeue_task(r, timeout=1)
    now = time.time()

    result = task_queue.nack_task(r, "job-a", "502 Bad Gateway", max_attempts=3, now=now)

    assert result == task_queue.REQUEUED
    assert task_queue.get_queue_length(r) == 0
    assert task_queue.get_delayed_count(r) == 1
    # Not due yet
    assert task_queue.promote_due_tasks(r, now=now) == 0
    assert task_queue.promote_due_tasks(r, now=now + 60) == 1
    assert task_queue.get_queue_position(r, "job-a") == 1
    meta = task_queue.get_task_meta(r, "job-a")
    assert meta["retries"] == "1"
    assert meta["last_error"] == "502 Bad Gateway"


def test_nack_dead_letters_when_budget_spent(r):
    _enqueue(r, "job-a")
    results = []
    for _ in range(3):
        task_queue.promote_due_tasks(r, now=time.time() + 3600)
        task_queue.dequeue_task(r, timeout=1)
        results.append(task_queue.nack_task(r, "job-a", "boom", max_attempts=3))

    assert results == [task_queue.REQUEUED, task_queue.REQUEUED, task_queue.DEAD_LETTER]
    assert task_queue.get_dead_letter_jobs(r) == ["job-a"]
    assert task_queue.get_processing_count(r) == 0


def test_retry_delay_grows_exponentially():
    assert 2.0 <= task_queue.retry_delay(1, base=2.0) <= 3.0
    assert 4.0 <= task_queue.retry_delay(2, base=2.0) <= 5.0
    assert 8.0 <= task_queue.retry_delay(3, base=2.0) <= 9.0


def test_recover_stale_tasks(r):
    _enqueue(r, "job-a")
    task_queue.dequeue_task(r, timeout=1)

    assert task_queue.recover_stale_tasks(r, now=time.time() + 10) == 0
    recovered = task_queue.recover_stale_tasks(r, now=time.time() + task_queue.STALE_TASK_TIMEOUT + 10)

    assert recovered == 1
    assert task_queue.get_processing_count(r) == 0
    assert task_queue.get_queue_position(r, "job-a") == 1


def test_recover_drops_orphans(r):
    r.lpush(task_queue.PROCESSING_KEY, "ghost")
    assert task_queue.recover_stale_tasks(r) == 0
    assert task_queue.get_processing_count(r) == 0
