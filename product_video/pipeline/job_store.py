"""
Job Store: the durable record of every generation request and the owning
account's usage counters.

All state transitions are conditional updates: a write only lands if the job
is still in the state the caller expects, which keeps the lifecycle
monotonic under redelivery. Completion and the usage increment run in one
database transaction (`complete_video_job`, see supabase/migrations).

Tables:
  accounts     — plan, videos_used_this_month, billing_cycle_start
  video_jobs   — one row per request, FK to accounts ON DELETE CASCADE
"""

import logging
import os
from datetime import datetime
from typing import Optional, Protocol
from uuid import uuid4

from supabase import Client, create_client

from .models import (
    ACTIVE_STATUSES,
    Account,
    JobStatus,
    Plan,
    VideoJob,
    utc_now,
)

logger = logging.getLogger(__name__)

JOBS_TABLE = "video_jobs"
ACCOUNTS_TABLE = "accounts"


class JobStore(Protocol):
    """Storage contract used by the processor and the request service."""

    # ── Jobs ──
    def create_job(self, account_id: str, product_ref: str,
                   source_image_urls: list[str], template_id: str) -> VideoJob: ...

    def get_job(self, job_id: str) -> Optional[VideoJob]: ...

    def list_jobs(self, account_id: str) -> list[VideoJob]: ...

    def claim_job(self, job_id: str) -> bool: ...

    def claim_stale_job(self, job_id: str, stale_before: datetime) -> bool: ...

    def record_progress(self, job_id: str, operation_token: str, poll_attempts: int) -> None: ...

    def complete_job(self, job_id: str, video_url: str) -> bool: ...

    def fail_job(self, job_id: str, error_message: str) -> bool: ...

    def list_stale_jobs(self, stale_before: datetime) -> list[VideoJob]: ...

    # ── Accounts ──
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_or_create_account(self, account_id: str) -> Account: ...

    def change_plan(self, account_id: str, plan: str, now: datetime) -> Optional[Account]: ...

    def reset_billing_cycles(self, cutoff: datetime, now: datetime) -> int: ...

    def delete_account(self, account_id: str) -> bool: ...


# ── Supabase Service Client (bypasses RLS) ───────────────────────────────────

_service_client: Optional[Client] = None


def get_service_client() -> Client:
    """Lazy-init Supabase client using the service role key."""
    global _service_client
    if _service_client is None:
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(url, key)
    return _service_client


def _iso(value: datetime) -> str:
    return value.isoformat()


class SupabaseJobStore:
    """JobStore backed by Supabase (PostgREST)."""

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def sb(self) -> Client:
        if self._client is None:
            self._client = get_service_client()
        return self._client

    # ── Jobs ─────────────────────────────────────────────────────────────

    def create_job(self, account_id, product_ref, source_image_urls, template_id) -> VideoJob:
        now = _iso(utc_now())
        row = {
            "id": str(uuid4()),
            "account_id": account_id,
            "product_ref": product_ref,
            "source_image_urls": source_image_urls,
            "template_id": template_id,
            "status": JobStatus.QUEUED.value,
            "poll_attempts": 0,
            "created_at": now,
            "updated_at": now,
        }
        result = self.sb.table(JOBS_TABLE).insert(row).execute()
        return VideoJob.model_validate(result.data[0] if result.data else row)

    def get_job(self, job_id: str) -> Optional[VideoJob]:
        result = self.sb.table(JOBS_TABLE).select("*").eq("id", job_id).limit(1).execute()
        if not result.data:
            return None
        return VideoJob.model_validate(result.data[0])

    def list_jobs(self, account_id: str) -> list[VideoJob]:
        result = (
            self.sb.table(JOBS_TABLE)
            .select("*")
            .eq("account_id", account_id)
            .order("created_at", desc=True)
            .execute()
        )
        return [VideoJob.model_validate(row) for row in result.data]

    def claim_job(self, job_id: str) -> bool:
        """queued → processing. False if the job is no longer queued."""
        result = (
            self.sb.table(JOBS_TABLE)
            .update({"status": JobStatus.PROCESSING.value, "updated_at": _iso(utc_now())})
            .eq("id", job_id)
            .eq("status", JobStatus.QUEUED.value)
            .execute()
        )
        return bool(result.data)

    def claim_stale_job(self, job_id: str, stale_before: datetime) -> bool:
        """Take over a processing job whose heartbeat stopped before `stale_before`."""
        result = (
            self.sb.table(JOBS_TABLE)
            .update({"updated_at": _iso(utc_now())})
            .eq("id", job_id)
            .eq("status", JobStatus.PROCESSING.value)
            .lt("updated_at", _iso(stale_before))
            .execute()
        )
        return bool(result.data)

    def record_progress(self, job_id: str, operation_token: str, poll_attempts: int) -> None:
        (
            self.sb.table(JOBS_TABLE)
            .update({
                "operation_token": operation_token,
                "poll_attempts": poll_attempts,
                "updated_at": _iso(utc_now()),
            })
            .eq("id", job_id)
            .eq("status", JobStatus.PROCESSING.value)
            .execute()
        )

    def complete_job(self, job_id: str, video_url: str) -> bool:
        """processing → done and usage +1, in one transaction."""
        result = self.sb.rpc(
            "complete_video_job",
            {"p_job_id": job_id, "p_video_url": video_url},
        ).execute()
        return bool(result.data)

    def fail_job(self, job_id: str, error_message: str) -> bool:
        result = (
            self.sb.table(JOBS_TABLE)
            .update({
                "status": JobStatus.FAILED.value,
                "error_message": error_message[:2000],
                "updated_at": _iso(utc_now()),
            })
            .eq("id", job_id)
            .in_("status", ACTIVE_STATUSES)
            .execute()
        )
        return bool(result.data)

    def list_stale_jobs(self, stale_before: datetime) -> list[VideoJob]:
        result = (
            self.sb.table(JOBS_TABLE)
            .select("*")
            .eq("status", JobStatus.PROCESSING.value)
            .lt("updated_at", _iso(stale_before))
            .execute()
        )
        return [VideoJob.model_validate(row) for row in result.data]

    # ── Accounts ─────────────────────────────────────────────────────────

    def get_account(self, account_id: str) -> Optional[Account]:
        result = self.sb.table(ACCOUNTS_TABLE).select("*").eq("id", account_id).limit(1).execute()
        if not result.data:
            return None
        return Account.model_validate(result.data[0])

    def get_or_create_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if account:
            return account

        now = _iso(utc_now())
        self.sb.table(ACCOUNTS_TABLE).upsert(
            {
                "id": account_id,
                "plan": Plan.TRIAL.value,
                "videos_used_this_month": 0,
                "billing_cycle_start": now,
                "created_at": now,
            },
            on_conflict="id",
            ignore_duplicates=True,
        ).execute()
        logger.info(f"Created trial account {account_id}")
        return self.get_account(account_id)

    def change_plan(self, account_id: str, plan: str, now: datetime) -> Optional[Account]:
        result = (
            self.sb.table(ACCOUNTS_TABLE)
            .update({
                "plan": plan,
                "videos_used_this_month": 0,
                "billing_cycle_start": _iso(now),
            })
            .eq("id", account_id)
            .execute()
        )
        if not result.data:
            return None
        return Account.model_validate(result.data[0])

    def reset_billing_cycles(self, cutoff: datetime, now: datetime) -> int:
        result = (
            self.sb.table(ACCOUNTS_TABLE)
            .update({"videos_used_this_month": 0, "billing_cycle_start": _iso(now)})
            .lte("billing_cycle_start", _iso(cutoff))
            .neq("plan", Plan.TRIAL.value)
            .execute()
        )
        return len(result.data or [])

    def delete_account(self, account_id: str) -> bool:
        # video_jobs rows go with it (ON DELETE CASCADE)
        result = self.sb.table(ACCOUNTS_TABLE).delete().eq("id", account_id).execute()
        return bool(result.data)
