"""
Domain core: job lifecycle, quota policy, templates and the processor that
drives a delivered job to a terminal state.
"""

from .models import Account, DeliveryPayload, JobStatus, Plan, VideoJob
from .processor import JobProcessor, Outcome

__all__ = [
    "Account",
    "DeliveryPayload",
    "JobProcessor",
    "JobStatus",
    "Outcome",
    "Plan",
    "VideoJob",
]
