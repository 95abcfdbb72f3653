"""
In-memory Job Store.

Used when Supabase is not configured (local development) and by the test
suite. Same contract and the same conditional-transition rules as the
Supabase store; all state is lost on restart.
"""

import threading
from datetime import datetime
from typing import Callable, Dict, Optional
from uuid import uuid4

from .models import Account, JobStatus, Plan, VideoJob, utc_now


class MemoryJobStore:
    """Thread-safe JobStore kept in process memory."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: Dict[str, VideoJob] = {}
        self._accounts: Dict[str, Account] = {}

    # ── Jobs ─────────────────────────────────────────────────────────────

    def create_job(self, account_id, product_ref, source_image_urls, template_id) -> VideoJob:
        now = self._clock()
        job = VideoJob(
            id=str(uuid4()),
            account_id=account_id,
            product_ref=product_ref,
            source_image_urls=list(source_image_urls),
            template_id=template_id,
            status=JobStatus.QUEUED,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._jobs[job.id] = job
        return job.model_copy(deep=True)

    def get_job(self, job_id: str) -> Optional[VideoJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def list_jobs(self, account_id: str) -> list[VideoJob]:
        with self._lock:
            jobs = [j.model_copy(deep=True) for j in self._jobs.values() if j.account_id == account_id]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def _transition(self, job_id: str, allowed: tuple, **changes) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in allowed:
                return False
            self._jobs[job_id] = job.model_copy(update={**changes, "updated_at": self._clock()})
            return True

    def claim_job(self, job_id: str) -> bool:
        return self._transition(job_id, (JobStatus.QUEUED,), status=JobStatus.PROCESSING)

    def claim_stale_job(self, job_id: str, stale_before: datetime) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING or job.updated_at >= stale_before:
                return False
            self._jobs[job_id] = job.model_copy(update={"updated_at": self._clock()})
            return True

    def record_progress(self, job_id: str, operation_token: str, poll_attempts: int) -> None:
        self._transition(
            job_id, (JobStatus.PROCESSING,),
            operation_token=operation_token, poll_attempts=poll_attempts,
        )

    def complete_job(self, job_id: str, video_url: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return False
            self._jobs[job_id] = job.model_copy(update={
                "status": JobStatus.DONE,
                "video_url": video_url,
                "updated_at": self._clock(),
            })
            account = self._accounts.get(job.account_id)
            if account is not None:
                self._accounts[account.id] = account.model_copy(
                    update={"videos_used_this_month": account.videos_used_this_month + 1}
                )
            return True

    def fail_job(self, job_id: str, error_message: str) -> bool:
        return self._transition(
            job_id, (JobStatus.QUEUED, JobStatus.PROCESSING),
            status=JobStatus.FAILED, error_message=error_message,
        )

    def list_stale_jobs(self, stale_before: datetime) -> list[VideoJob]:
        with self._lock:
            return [
                j.model_copy(deep=True) for j in self._jobs.values()
                if j.status == JobStatus.PROCESSING and j.updated_at < stale_before
            ]

    # ── Accounts ─────────────────────────────────────────────────────────

    def add_account(self, account: Account) -> Account:
        with self._lock:
            self._accounts[account.id] = account
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._lock:
            account = self._accounts.get(account_id)
            return account.model_copy(deep=True) if account else None

    def get_or_create_account(self, account_id: str) -> Account:
        with self._lock:
            if account_id not in self._accounts:
                now = self._clock()
                self._accounts[account_id] = Account(
                    id=account_id,
                    plan=Plan.TRIAL.value,
                    billing_cycle_start=now,
                    created_at=now,
                )
            return self._accounts[account_id].model_copy(deep=True)

    def change_plan(self, account_id: str, plan: str, now: datetime) -> Optional[Account]:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return None
            updated = account.model_copy(update={
                "plan": plan,
                "videos_used_this_month": 0,
                "billing_cycle_start": now,
            })
            self._accounts[account_id] = updated
            return updated.model_copy(deep=True)

    def reset_billing_cycles(self, cutoff: datetime, now: datetime) -> int:
        reset = 0
        with self._lock:
            for account_id, account in list(self._accounts.items()):
                if account.plan == Plan.TRIAL.value or account.billing_cycle_start > cutoff:
                    continue
                self._accounts[account_id] = account.model_copy(update={
                    "videos_used_this_month": 0,
                    "billing_cycle_start": now,
                })
                reset += 1
        return reset

    def delete_account(self, account_id: str) -> bool:
        with self._lock:
            if self._accounts.pop(account_id, None) is None:
                return False
            for job_id in [j.id for j in self._jobs.values() if j.account_id == account_id]:
                del self._jobs[job_id]
            return True
