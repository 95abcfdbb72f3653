from datetime import timedelta

import pytest

from conftest import IMAGES, BrokenDispatcher
from product_video.pipeline import service
from product_video.pipeline.errors import (
    AccountNotFoundError,
    DispatchError,
    InvalidPlanError,
    JobNotFoundError,
    SubmissionError,
)
from product_video.pipeline.models import Account, GenerateRequest, JobStatus


def _request(**overrides):
    fields = {
        "account_id": "shop-1",
        "product_ref": "gid://shopify/Product/1",
        "image_urls": IMAGES,
        "template_id": "lifestyle",
    }
    fields.update(overrides)
    return GenerateRequest(**fields)


# ── Submission ───────────────────────────────────────────────────────────────

def test_new_trial_account_can_submit(store, dispatcher, sink):
    job = service.submit_generation(store, dispatcher, _request(), sink)

    stored = store.get_job(job.id)
    assert stored.status == JobStatus.QUEUED
    assert stored.account_id == "shop-1"
    assert store.get_account("shop-1").plan == "trial"
    assert dispatcher.enqueued == [{
        "job_id": job.id,
        "account_id": "shop-1",
        "image_refs": IMAGES,
        "template_id": "lifestyle",
    }]
    assert sink.of("job.created")[0]["job_id"] == job.id


def test_trial_account_at_limit_is_rejected(store, dispatcher, sink):
    store.add_account(Account(id="shop-1", plan="trial", videos_used_this_month=1))

    with pytest.raises(SubmissionError) as exc:
        service.submit_generation(store, dispatcher, _request(), sink)

    assert exc.value.code == SubmissionError.LIMIT_REACHED
    assert exc.value.upgrade_required
    assert store.list_jobs("shop-1") == []
    assert dispatcher.enqueued == []


def test_unknown_plan_has_no_allowance(store, dispatcher):
    store.add_account(Account(id="shop-1", plan="enterprise", videos_used_this_month=0))

    with pytest.raises(SubmissionError) as exc:
        service.submit_generation(store, dispatcher, _request())
    assert exc.value.code == SubmissionError.LIMIT_REACHED


@pytest.mark.parametrize("missing", ["account_id", "product_ref", "image_urls", "template_id"])
def test_missing_fields(store, dispatcher, missing):
    with pytest.raises(SubmissionError) as exc:
        service.submit_generation(store, dispatcher, _request(**{missing: None}))

    assert exc.value.code == SubmissionError.MISSING_FIELDS
    assert dispatcher.enqueued == []


def test_empty_image_list_counts_as_missing(store, dispatcher):
    with pytest.raises(SubmissionError) as exc:
        service.submit_generation(store, dispatcher, _request(image_urls=[]))
    assert exc.value.code == SubmissionError.MISSING_FIELDS


def test_four_images_rejected(store, dispatcher):
    images = [f"https://cdn.example.com/{i}.jpg" for i in range(4)]

    with pytest.raises(SubmissionError) as exc:
        service.submit_generation(store, dispatcher, _request(image_urls=images))

    assert exc.value.code == SubmissionError.TOO_MANY_IMAGES
    assert store.list_jobs("shop-1") == []


def test_three_images_accepted(store, dispatcher):
    images = [f"https://cdn.example.com/{i}.jpg" for i in range(3)]
    job = service.submit_generation(store, dispatcher, _request(image_urls=images))
    assert store.get_job(job.id).source_image_urls == images


def test_unknown_template_rejected(store, dispatcher):
    with pytest.raises(SubmissionError) as exc:
        service.submit_generation(store, dispatcher, _request(template_id="slow-motion"))
    assert exc.value.code == SubmissionError.UNKNOWN_TEMPLATE


def test_validation_runs_before_quota(store, dispatcher):
    store.add_account(Account(id="shop-1", plan="trial", videos_used_this_month=1))
    images = [f"https://cdn.example.com/{i}.jpg" for i in range(4)]

    with pytest.raises(SubmissionError) as exc:
        service.submit_generation(store, dispatcher, _request(image_urls=images))
    assert exc.value.code == SubmissionError.TOO_MANY_IMAGES


def test_failed_enqueue_is_recorded_on_the_job(store, sink):
    with pytest.raises(DispatchError) as exc:
        service.submit_generation(store, BrokenDispatcher(), _request(), sink)

    job = store.get_job(exc.value.job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "Dispatch failed: redis down"
    assert [j.status for j in store.list_jobs("shop-1")] == [JobStatus.FAILED]
    assert sink.of("job.state_changed")[0]["to"] == "failed"
    assert store.get_account("shop-1").videos_used_this_month == 0


# ── Queries ──────────────────────────────────────────────────────────────────

def test_list_jobs_newest_first(store, dispatcher, clock):
    store.add_account(Account(id="shop-1", plan="pro"))
    first = service.submit_generation(store, dispatcher, _request())
    clock.advance(60)
    second = service.submit_generation(store, dispatcher, _request())

    assert [j.id for j in service.list_jobs(store, "shop-1")] == [second.id, first.id]
    assert service.list_jobs(store, "shop-2") == []


def test_get_job_not_found(store):
    with pytest.raises(JobNotFoundError):
        service.get_job(store, "nope")


# ── Billing period ───────────────────────────────────────────────────────────

def test_upgrade_resets_usage_and_cycle(store, clock):
    store.add_account(Account(
        id="shop-1", plan="trial", videos_used_this_month=1,
        billing_cycle_start=clock() - timedelta(days=12),
    ))

    account = service.upgrade_plan(store, "shop-1", "basic", now=clock())

    assert account.plan == "basic"
    assert account.videos_used_this_month == 0
    assert account.billing_cycle_start == clock()


@pytest.mark.parametrize("plan", ["trial", "enterprise", ""])
def test_upgrade_rejects_non_purchasable_plans(store, plan):
    store.get_or_create_account("shop-1")
    with pytest.raises(InvalidPlanError):
        service.upgrade_plan(store, "shop-1", plan)


def test_upgrade_unknown_account(store):
    with pytest.raises(AccountNotFoundError):
        service.upgrade_plan(store, "ghost", "pro")


def test_reset_sweep(store, clock):
    now = clock()
    store.add_account(Account(id="old-basic", plan="basic", videos_used_this_month=18,
                              billing_cycle_start=now - timedelta(days=31)))
    store.add_account(Account(id="boundary-pro", plan="pro", videos_used_this_month=40,
                              billing_cycle_start=now - timedelta(days=30)))
    store.add_account(Account(id="recent-basic", plan="basic", videos_used_this_month=3,
                              billing_cycle_start=now - timedelta(days=29)))
    store.add_account(Account(id="old-trial", plan="trial", videos_used_this_month=1,
                              billing_cycle_start=now - timedelta(days=90)))

    count = service.reset_billing_cycles(store, now=now, period_days=30)

    assert count == 2
    assert store.get_account("old-basic").videos_used_this_month == 0
    assert store.get_account("old-basic").billing_cycle_start == now
    assert store.get_account("boundary-pro").videos_used_this_month == 0
    assert store.get_account("recent-basic").videos_used_this_month == 3
    assert store.get_account("old-trial").videos_used_this_month == 1


def test_delete_account_removes_jobs(store, dispatcher):
    job = service.submit_generation(store, dispatcher, _request())

    assert service.delete_account(store, "shop-1") is True
    assert store.get_account("shop-1") is None
    assert store.get_job(job.id) is None
    assert service.delete_account(store, "shop-1") is False


# ── Reconciliation ───────────────────────────────────────────────────────────

def test_reconcile_redispatches_only_stale_processing_jobs(store, dispatcher, clock):
    store.add_account(Account(id="shop-1", plan="pro"))
    stale = store.create_job("shop-1", "p-1", IMAGES, "zoom-pan")
    store.claim_job(stale.id)
    clock.advance(900)
    fresh = store.create_job("shop-1", "p-2", IMAGES, "zoom-pan")
    store.claim_job(fresh.id)
    store.create_job("shop-1", "p-3", IMAGES, "zoom-pan")  # queued, untouched

    count = service.reconcile_stale_jobs(store, dispatcher, now=clock(), stale_after_seconds=600)

    assert count == 1
    assert [d["job_id"] for d in dispatcher.enqueued] == [stale.id]
