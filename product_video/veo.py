"""
Vertex AI Veo client (REST).

Start (predictLongRunning):
  POST https://{LOCATION}-aiplatform.googleapis.com/v1/projects/{PROJECT}/locations/{LOCATION}/publishers/google/models/{MODEL}:predictLongRunning

Poll (fetchPredictOperation):
  POST .../publishers/google/models/{MODEL}:fetchPredictOperation
  Body: {"operationName": "<name returned by predictLongRunning>"}

The first reference image is downloaded and sent inline as base64. Output
lands in gs://{GCS_BUCKET_NAME}/videos/{ts}/ and is handed back as a gs://
reference, which `resolve_playback_url` signs.
"""

import base64
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import google.auth
import requests
from google.auth.transport.requests import Request as AuthRequest
from google.oauth2 import service_account

from . import config, storage
from .pipeline.errors import (
    GenerationError,
    GenerationStartError,
    MalformedResponseError,
    PollError,
)
from .pipeline.generation import PollResult

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]
VERTEX_TIMEOUT = 60

# ── Retry configuration (start request only; the poll loop retries polls) ─────
MAX_RETRIES = 3
BASE_DELAY = 2.0
JITTER_MAX = 1.0
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

ALLOWED_DURATIONS = (4, 6, 8)


@dataclass
class VeoOperation:
    name: str


def _normalize_duration(duration_seconds: Any) -> int:
    """Snap a template duration to the nearest length Veo accepts (ties round up)."""
    try:
        value = int(duration_seconds)
    except (ValueError, TypeError):
        return 6
    return min(ALLOWED_DURATIONS, key=lambda d: (abs(d - value), -d))


def _error_text(response: requests.Response) -> str:
    try:
        return response.json().get("error", {}).get("message", response.text[:300])
    except ValueError:
        return response.text[:300] if response.text else "No error details"


def default_token_provider() -> Callable[[], str]:
    """Access-token source backed by google-auth; refreshes when expired."""
    if config.GOOGLE_CREDENTIALS:
        credentials = service_account.Credentials.from_service_account_info(
            config.GOOGLE_CREDENTIALS, scopes=SCOPES,
        )
    else:
        credentials, _ = google.auth.default(scopes=SCOPES)

    def _token() -> str:
        if not credentials.valid:
            credentials.refresh(AuthRequest())
        return credentials.token

    return _token


class VeoClient:
    """
    Usage:
        client = VeoClient()
        op = client.start(prompt, ["https://.../front.jpg"], 6, "16:9")
        result = client.poll(op)
    """

    def __init__(
        self,
        project: str = config.GOOGLE_CLOUD_PROJECT,
        location: str = config.GOOGLE_CLOUD_LOCATION,
        model: str = config.VEO_MODEL,
        bucket: str = config.GCS_BUCKET_NAME,
        token_provider: Optional[Callable[[], str]] = None,
        session: Optional[requests.Session] = None,
        sign_url: Callable[[str], str] = storage.signed_gcs_url,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.project = project
        self.location = location
        self.model = model
        self.bucket = bucket
        self._token_provider = token_provider
        self.session = session or requests.Session()
        self._sign_url = sign_url
        self._sleep = sleep

    @property
    def _model_url(self) -> str:
        return (
            f"https://{self.location}-aiplatform.googleapis.com/v1/"
            f"projects/{self.project}/locations/{self.location}/"
            f"publishers/google/models/{self.model}"
        )

    def _headers(self) -> dict:
        if self._token_provider is None:
            self._token_provider = default_token_provider()
        return {
            "Authorization": f"Bearer {self._token_provider()}",
            "Content-Type": "application/json",
        }

    # ── Start ────────────────────────────────────────────────────────────

    def start(self, prompt: str, reference_images: list[str], duration_seconds: int, aspect_ratio: str) -> VeoOperation:
        if not reference_images:
            raise GenerationStartError("At least one reference image is required")

        image_b64, mime_type = self._fetch_image(reference_images[0])
        duration = _normalize_duration(duration_seconds)
        output_uri = storage.output_prefix(self.bucket, int(time.time() * 1000))

        payload = {
            "instances": [{
                "prompt": prompt,
                "image": {"bytesBase64Encoded": image_b64, "mimeType": mime_type},
            }],
            "parameters": {
                "aspectRatio": aspect_ratio,
                "durationSeconds": duration,
                "sampleCount": 1,
                "personGeneration": "allow_all",
                "storageUri": output_uri,
            },
        }

        logger.info(
            f"[Veo] start model={self.model} duration={duration}s aspect={aspect_ratio} "
            f"images={len(reference_images)} output={output_uri}"
        )
        try:
            response = self._request_with_backoff("POST", f"{self._model_url}:predictLongRunning", json=payload)
        except requests.exceptions.RequestException as e:
            raise GenerationStartError(f"Veo request failed: {e}") from e

        if not response.ok:
            raise GenerationStartError(f"Veo API error {response.status_code}: {_error_text(response)}")

        try:
            name = response.json().get("name")
        except ValueError:
            name = None
        if not name:
            raise GenerationStartError("No operation name in Veo response")

        logger.info(f"[Veo] operation started: {name[:100]}")
        return VeoOperation(name=name)

    def _fetch_image(self, url: str) -> tuple[str, str]:
        try:
            response = self.session.get(url, timeout=30)
        except requests.exceptions.RequestException as e:
            raise GenerationStartError(f"Failed to fetch image: {e}") from e
        if not response.ok:
            raise GenerationStartError(f"Failed to fetch image: {response.status_code} {response.reason}")
        mime_type = response.headers.get("Content-Type", "image/jpeg").split(";")[0]
        logger.debug(f"[Veo] fetched reference image ({len(response.content)} bytes, {mime_type})")
        return base64.b64encode(response.content).decode("ascii"), mime_type

    def _request_with_backoff(self, method: str, url: str, **kwargs) -> requests.Response:
        """Retry 429/5xx and transport errors with exponential backoff."""
        for attempt in range(MAX_RETRIES + 1):
            try:
                response = self.session.request(method, url, headers=self._headers(), timeout=VERTEX_TIMEOUT, **kwargs)
            except requests.exceptions.RequestException as e:
                if attempt >= MAX_RETRIES:
                    raise
                delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
                logger.warning(f"[Veo] request error on attempt {attempt + 1}/{MAX_RETRIES + 1}: {e}, retrying in {delay:.1f}s")
                self._sleep(delay)
                continue

            if response.status_code not in RETRYABLE_STATUS_CODES or attempt >= MAX_RETRIES:
                return response

            delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
            logger.warning(
                f"[Veo] {response.status_code} on attempt {attempt + 1}/{MAX_RETRIES + 1}, retrying in {delay:.1f}s"
            )
            self._sleep(delay)

        raise GenerationError(f"Request to {url} failed after {MAX_RETRIES + 1} attempts")

    # ── Poll ─────────────────────────────────────────────────────────────

    def poll(self, handle: VeoOperation) -> PollResult:
        try:
            response = self.session.post(
                f"{self._model_url}:fetchPredictOperation",
                headers=self._headers(),
                json={"operationName": handle.name.lstrip("/")},
                timeout=VERTEX_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            raise PollError(f"Connection error: {e}") from e

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise PollError(f"Veo server error {response.status_code}")
        if response.status_code == 404:
            raise GenerationError(f"Operation not found: {handle.name}")
        if not response.ok:
            raise GenerationError(f"Veo API error {response.status_code}: {_error_text(response)}")

        try:
            result = response.json()
        except ValueError as e:
            raise MalformedResponseError("Veo returned a non-JSON poll response") from e
        if not isinstance(result, dict):
            raise MalformedResponseError(f"Unexpected poll response: {str(result)[:200]}")

        if not result.get("done"):
            progress = result.get("metadata", {}).get("progressPercent", 0)
            logger.debug(f"[Veo] processing, progress={progress}%")
            return PollResult(done=False, handle=handle)

        if result.get("error"):
            error = result["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            logger.error(f"[Veo] operation failed: {message}")
            return PollResult(done=True, handle=handle, error_message=message or "Video generation failed")

        video_ref = _extract_video_ref(result.get("response") or {})
        if video_ref:
            logger.info(f"[Veo] video ready: {video_ref[:100]}")
            return PollResult(done=True, handle=handle, video_ref=video_ref)

        reasons = _filtered_reasons(result.get("response") or {})
        if reasons:
            return PollResult(
                done=True, handle=handle,
                error_message=f"Content blocked by safety filters: {', '.join(reasons)}",
            )
        return PollResult(done=True, handle=handle)

    # ── Playback / handle persistence ────────────────────────────────────

    def resolve_playback_url(self, video_ref: str) -> str:
        if video_ref.startswith("gs://"):
            return self._sign_url(video_ref)
        return video_ref

    def handle_token(self, handle: VeoOperation) -> str:
        return handle.name

    def restore_handle(self, token: str) -> VeoOperation:
        return VeoOperation(name=token)


def _extract_video_ref(response: dict) -> Optional[str]:
    """First video reference in a finished operation (the shape varies by API version)."""
    videos = response.get("videos") or response.get("generatedVideos") or []
    if videos:
        item = videos[0]
        ref = item.get("gcsUri") or item.get("uri") or (item.get("video") or {}).get("uri")
        if ref:
            return ref

    samples = (response.get("generateVideoResponse") or {}).get("generatedSamples") or []
    if samples:
        video = samples[0].get("video") or {}
        return video.get("uri") or video.get("gcsUri")
    return None


def _filtered_reasons(response: dict) -> list[str]:
    reasons = (response.get("generateVideoResponse") or {}).get("raiMediaFilteredReasons") \
        or response.get("raiMediaFilteredReasons") or []
    return [str(r) for r in reasons]
