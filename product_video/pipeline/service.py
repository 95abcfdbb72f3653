"""
Request-side operations: accept a generation request, answer job queries,
and the billing-period mutations (plan change, monthly reset, uninstall).

Submission order:
  1. Validate input           → SubmissionError, nothing persisted
  2. Quota check              → SubmissionError(limit_reached), nothing persisted
  3. Create job (queued)
  4. Enqueue for processing   → DispatchError, job recorded as failed
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Protocol

from .. import config
from .errors import (
    AccountNotFoundError,
    DispatchError,
    InvalidPlanError,
    JobNotFoundError,
    SubmissionError,
)
from .events import EventSink, LoggingEventSink
from .job_store import JobStore
from .models import (
    PURCHASABLE_PLANS,
    Account,
    GenerateRequest,
    JobStatus,
    VideoJob,
    utc_now,
)
from .quota import can_start
from .templates import get_template

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    def enqueue(self, job_id: str, account_id: str, image_refs: list[str], template_id: str) -> None: ...


# ═════════════════════════════════════════════════════════════════════════════
# A. Submit
# ═════════════════════════════════════════════════════════════════════════════

def validate_request(request: GenerateRequest) -> None:
    if (
        not request.account_id
        or not request.product_ref
        or not request.image_urls
        or not request.template_id
    ):
        raise SubmissionError(SubmissionError.MISSING_FIELDS, "Missing required fields")

    if len(request.image_urls) > config.MAX_SOURCE_IMAGES:
        raise SubmissionError(
            SubmissionError.TOO_MANY_IMAGES,
            f"Maximum {config.MAX_SOURCE_IMAGES} images allowed",
        )

    if get_template(request.template_id) is None:
        raise SubmissionError(
            SubmissionError.UNKNOWN_TEMPLATE, f"Unknown template: {request.template_id}",
        )


def submit_generation(
    store: JobStore,
    dispatcher: Dispatcher,
    request: GenerateRequest,
    events: Optional[EventSink] = None,
) -> VideoJob:
    """Validate, check quota, create the job and hand it to the queue."""
    events = events or LoggingEventSink()
    validate_request(request)

    account = store.get_or_create_account(request.account_id)
    if not can_start(account.plan, account.videos_used_this_month):
        logger.info(
            f"Account {account.id} at limit ({account.plan}: {account.videos_used_this_month} used)"
        )
        raise SubmissionError(SubmissionError.LIMIT_REACHED, "Monthly video limit reached")

    job = store.create_job(
        account_id=account.id,
        product_ref=request.product_ref,
        source_image_urls=request.image_urls,
        template_id=request.template_id,
    )
    events.emit(
        "job.created", job_id=job.id, account_id=account.id,
        template_id=job.template_id, image_count=len(job.source_image_urls),
    )

    try:
        dispatcher.enqueue(job.id, account.id, job.source_image_urls, job.template_id)
    except Exception as e:
        reason = str(e) or e.__class__.__name__
        logger.error(f"[{job.id}] could not be queued: {reason}", exc_info=True)
        error = DispatchError(job.id, reason)
        if store.fail_job(job.id, str(error)):
            events.emit(
                "job.state_changed", job_id=job.id, account_id=account.id, template_id=job.template_id,
                from_status=JobStatus.QUEUED.value, to=JobStatus.FAILED.value, error=str(error),
            )
        raise error from e
    return job


# ═════════════════════════════════════════════════════════════════════════════
# B. Queries
# ═════════════════════════════════════════════════════════════════════════════

def list_jobs(store: JobStore, account_id: str) -> list[VideoJob]:
    """All jobs of an account, newest first."""
    return store.list_jobs(account_id)


def get_job(store: JobStore, job_id: str) -> VideoJob:
    job = store.get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def get_account(store: JobStore, account_id: str) -> Account:
    account = store.get_account(account_id)
    if account is None:
        raise AccountNotFoundError(account_id)
    return account


# ═════════════════════════════════════════════════════════════════════════════
# C. Billing period
# ═════════════════════════════════════════════════════════════════════════════

def upgrade_plan(store: JobStore, account_id: str, plan: str, now: Optional[datetime] = None) -> Account:
    """Switch plan and start a fresh billing period."""
    if plan not in PURCHASABLE_PLANS:
        raise InvalidPlanError(plan)
    account = store.change_plan(account_id, plan, now or utc_now())
    if account is None:
        raise AccountNotFoundError(account_id)
    logger.info(f"Account {account_id} moved to plan {plan}, usage reset")
    return account


def reset_billing_cycles(
    store: JobStore,
    now: Optional[datetime] = None,
    period_days: int = config.BILLING_PERIOD_DAYS,
) -> int:
    """Reset usage for non-trial accounts whose period began `period_days` ago or earlier."""
    now = now or utc_now()
    cutoff = now - timedelta(days=period_days)
    count = store.reset_billing_cycles(cutoff, now)
    logger.info(f"Billing reset: {count} account(s) started a new period")
    return count


def delete_account(store: JobStore, account_id: str) -> bool:
    """Remove an account and, by cascade, its jobs. In-flight generations finish unobserved."""
    deleted = store.delete_account(account_id)
    if deleted:
        logger.info(f"Deleted account {account_id} and its jobs")
    return deleted


# ═════════════════════════════════════════════════════════════════════════════
# D. Reconciliation
# ═════════════════════════════════════════════════════════════════════════════

def reconcile_stale_jobs(
    store: JobStore,
    dispatcher: Dispatcher,
    now: Optional[datetime] = None,
    stale_after_seconds: int = config.STALE_PROCESSING_SECONDS,
) -> int:
    """
    Re-dispatch `processing` jobs whose heartbeat stopped. The worker that
    receives them resumes polling from the persisted token, or fails the job
    when there is nothing to resume.
    """
    stale_before = (now or utc_now()) - timedelta(seconds=stale_after_seconds)
    stale = store.list_stale_jobs(stale_before)
    for job in stale:
        logger.warning(f"[{job.id}] stale since {job.updated_at.isoformat()}, re-dispatching")
        dispatcher.enqueue(job.id, job.account_id, job.source_image_urls, job.template_id)
    return len(stale)
