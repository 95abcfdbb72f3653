"""
Error taxonomy for the product video pipeline.

Submission errors are raised before any job exists and are returned to the
caller. Generation errors are raised by the generation client and end up
recorded on the job by the processor.
"""

from typing import Optional


class ProductVideoError(Exception):
    """Base class for all pipeline errors."""


# ── Submission ───────────────────────────────────────────────────────────────

class SubmissionError(ProductVideoError):
    """A generation request was rejected before a job was created."""

    MISSING_FIELDS = "missing_fields"
    TOO_MANY_IMAGES = "too_many_images"
    UNKNOWN_TEMPLATE = "unknown_template"
    LIMIT_REACHED = "limit_reached"

    def __init__(self, code: str, message: Optional[str] = None):
        self.code = code
        self.message = message or code
        super().__init__(self.message)

    @property
    def upgrade_required(self) -> bool:
        return self.code == self.LIMIT_REACHED


class InvalidPlanError(ProductVideoError, ValueError):
    def __init__(self, plan: str):
        self.plan = plan
        super().__init__(f"Invalid plan: {plan}")


class JobNotFoundError(ProductVideoError, LookupError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class AccountNotFoundError(ProductVideoError, LookupError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class DispatchError(ProductVideoError):
    """A job was created but could not be handed to the Dispatch Queue."""

    def __init__(self, job_id: str, reason: str):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Dispatch failed: {reason}")


# ── Generation Client ────────────────────────────────────────────────────────

class GenerationError(ProductVideoError):
    """Raised by a generation client."""


class GenerationStartError(GenerationError):
    """The operation could not be started (bad input, unreachable image, rejection)."""


class PollError(GenerationError):
    """Transport failure while polling an operation."""


class MalformedResponseError(GenerationError):
    """The generation service answered with something we cannot interpret."""


class PlaybackUrlError(GenerationError):
    """A finished video reference could not be turned into a consumable URL."""


# ── Delivery ─────────────────────────────────────────────────────────────────

class DeliveryAuthError(ProductVideoError):
    """A delivery callback failed signature verification."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Unauthorized delivery: {reason}")
