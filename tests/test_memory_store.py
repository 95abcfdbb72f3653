from datetime import timedelta

from conftest import IMAGES
from product_video.pipeline.models import JobStatus


def test_claim_only_from_queued(store, queued_job):
    assert store.claim_job(queued_job.id) is True
    assert store.claim_job(queued_job.id) is False
    assert store.get_job(queued_job.id).status == JobStatus.PROCESSING


def test_complete_counts_usage_once(store, queued_job):
    store.claim_job(queued_job.id)

    assert store.complete_job(queued_job.id, "https://signed.example.com/v.mp4") is True
    assert store.complete_job(queued_job.id, "https://signed.example.com/other.mp4") is False

    assert store.get_account("shop-1").videos_used_this_month == 1
    assert store.get_job(queued_job.id).video_url == "https://signed.example.com/v.mp4"


def test_complete_requires_processing(store, queued_job):
    assert store.complete_job(queued_job.id, "https://signed.example.com/v.mp4") is False
    assert store.get_account("shop-1").videos_used_this_month == 0


def test_terminal_states_are_final(store, queued_job):
    store.claim_job(queued_job.id)
    store.fail_job(queued_job.id, "boom")

    assert store.fail_job(queued_job.id, "again") is False
    assert store.claim_job(queued_job.id) is False
    assert store.complete_job(queued_job.id, "https://x") is False
    job = store.get_job(queued_job.id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "boom"


def test_record_progress_refreshes_heartbeat(store, queued_job, clock):
    store.claim_job(queued_job.id)
    clock.advance(42)
    store.record_progress(queued_job.id, "op#1", 1)

    job = store.get_job(queued_job.id)
    assert job.updated_at == clock()
    assert (job.operation_token, job.poll_attempts) == ("op#1", 1)


def test_claim_stale_job(store, queued_job, clock):
    store.claim_job(queued_job.id)
    clock.advance(700)
    stale_before = clock() - timedelta(seconds=600)

    assert store.claim_stale_job(queued_job.id, stale_before) is True
    # The claim refreshed the heartbeat, so a second taker loses
    assert store.claim_stale_job(queued_job.id, stale_before) is False


def test_returned_jobs_are_copies(store, queued_job):
    job = store.get_job(queued_job.id)
    job.source_image_urls.append("https://evil.example.com/x.jpg")
    assert store.get_job(queued_job.id).source_image_urls == IMAGES
