"""
Storage helpers for finished videos.

  - GCS: Veo writes its output under gs://{GCS_BUCKET_NAME}/videos/{ts}/;
    playback uses a V4 signed URL (7 days by default).
  - R2: optional permanent copy so a video outlives its signed URL.
"""

import logging
import re
from datetime import timedelta
from typing import Optional

import boto3
import httpx
from botocore.config import Config as BotoConfig
from google.cloud import storage as gcs
from google.oauth2 import service_account

from . import config
from .pipeline.errors import PlaybackUrlError

logger = logging.getLogger(__name__)

_GCS_URI = re.compile(r"^gs://([^/]+)/(.+)$")

_gcs_client: Optional[gcs.Client] = None


def get_gcs_client() -> gcs.Client:
    global _gcs_client
    if _gcs_client is None:
        if config.GOOGLE_CREDENTIALS:
            credentials = service_account.Credentials.from_service_account_info(config.GOOGLE_CREDENTIALS)
            _gcs_client = gcs.Client(project=config.GOOGLE_CLOUD_PROJECT or None, credentials=credentials)
        else:
            _gcs_client = gcs.Client(project=config.GOOGLE_CLOUD_PROJECT or None)
    return _gcs_client


def parse_gcs_uri(gcs_uri: str) -> tuple[str, str]:
    match = _GCS_URI.match(gcs_uri)
    if not match:
        raise PlaybackUrlError(f"Invalid GCS URI: {gcs_uri}")
    return match.group(1), match.group(2)


def output_prefix(bucket: str, timestamp_ms: int) -> str:
    return f"gs://{bucket}/videos/{timestamp_ms}/"


def signed_gcs_url(
    gcs_uri: str,
    ttl_days: int = config.SIGNED_URL_TTL_DAYS,
    client: Optional[gcs.Client] = None,
) -> str:
    """Time-limited read URL for a gs:// object."""
    bucket_name, blob_path = parse_gcs_uri(gcs_uri)
    client = client or get_gcs_client()
    try:
        blob = client.bucket(bucket_name).blob(blob_path)
        url = blob.generate_signed_url(
            version="v4",
            expiration=timedelta(days=ttl_days),
            method="GET",
        )
    except Exception as e:
        raise PlaybackUrlError(f"Could not sign {gcs_uri}: {e}") from e
    logger.debug(f"Signed {gcs_uri} for {ttl_days} days")
    return url


# ── R2 ───────────────────────────────────────────────────────────────────────

def r2_configured() -> bool:
    return bool(config.R2_ENDPOINT and config.R2_ACCESS_KEY_ID and config.R2_BUCKET_NAME)


def video_key(job_id: str) -> str:
    return f"videos/{job_id}.mp4"


class R2Publisher:
    """Copies a finished video into R2 and returns its public URL."""

    def __init__(self, s3_client=None, bucket: str = config.R2_BUCKET_NAME,
                 public_url: str = config.R2_PUBLIC_URL):
        self.s3 = s3_client or boto3.client(
            "s3",
            endpoint_url=config.R2_ENDPOINT,
            aws_access_key_id=config.R2_ACCESS_KEY_ID,
            aws_secret_access_key=config.R2_SECRET_ACCESS_KEY,
            config=BotoConfig(signature_version="s3v4"),
            region_name="auto",
        )
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")

    def publish(self, job_id: str, video_url: str) -> str:
        resp = httpx.get(video_url, timeout=120, follow_redirects=True)
        resp.raise_for_status()

        key = video_key(job_id)
        self.s3.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=resp.content,
            ContentType="video/mp4",
        )
        logger.info(f"[{job_id}] copied {len(resp.content)} bytes to r2://{self.bucket}/{key}")
        return f"{self.public_url}/{key}"
