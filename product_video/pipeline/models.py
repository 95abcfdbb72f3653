"""
Pydantic models and enums for the product video pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ── Job Status ───────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAILED)


ACTIVE_STATUSES = [JobStatus.QUEUED.value, JobStatus.PROCESSING.value]


# ── Plan Tier ────────────────────────────────────────────────────────────────

class Plan(str, Enum):
    TRIAL = "trial"
    BASIC = "basic"
    PRO = "pro"


PURCHASABLE_PLANS = {Plan.BASIC.value, Plan.PRO.value}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Persisted Records ────────────────────────────────────────────────────────

class VideoJob(BaseModel):
    """One generation request and its lifecycle."""
    id: str
    account_id: str
    product_ref: str = ""
    source_image_urls: list[str] = Field(default_factory=list)
    template_id: str
    status: JobStatus = JobStatus.QUEUED
    video_url: Optional[str] = None
    error_message: Optional[str] = None
    # Continuation token of the in-flight generation operation + heartbeat
    operation_token: Optional[str] = None
    poll_attempts: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Account(BaseModel):
    id: str
    plan: str = Plan.TRIAL.value
    videos_used_this_month: int = 0
    billing_cycle_start: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)


# ── Queue Payload ────────────────────────────────────────────────────────────

class DeliveryPayload(BaseModel):
    """Body of a Dispatch Queue delivery (and of the signed callback)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str
    account_id: str
    source_image_urls: list[str] = Field(default_factory=list)
    template_id: str


# ── API Models ───────────────────────────────────────────────────────────────

class GenerateRequest(BaseModel):
    """Inbound generation request. Fields are optional so the service can
    report `missing_fields` instead of a schema error."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    account_id: Optional[str] = None
    product_ref: Optional[str] = None
    image_urls: Optional[list[str]] = None
    template_id: Optional[str] = None


class GenerateResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    job_id: str


class VideoResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    product_ref: str
    template_id: str
    status: JobStatus
    video_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: str  # ISO-8601
    source_image_urls: list[str] = Field(default_factory=list)

    @classmethod
    def from_job(cls, job: VideoJob) -> "VideoResponse":
        return cls(
            id=job.id,
            product_ref=job.product_ref,
            template_id=job.template_id,
            status=job.status,
            video_url=job.video_url,
            error_message=job.error_message,
            created_at=job.created_at.isoformat(),
            source_image_urls=job.source_image_urls,
        )


class PlanChangeRequest(BaseModel):
    plan: str


class AccountUsageResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    plan: str
    videos_used_this_month: int
    limit: int
    remaining: int
    billing_cycle_start: str
