"""
Worker configuration, read from the environment (and .env) at import time.
"""

import json
import os

from dotenv import load_dotenv

load_dotenv()


def _int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # text | json
SERVICE_NAME = "product-video-generator"

# ── Backing services ─────────────────────────────────────────────────────────
REDIS_URL = os.environ.get("REDIS_URL", "")
SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")

# ── Vertex AI Veo ────────────────────────────────────────────────────────────
GOOGLE_CLOUD_PROJECT = os.environ.get("GOOGLE_CLOUD_PROJECT", "")
GOOGLE_CLOUD_LOCATION = os.environ.get("GOOGLE_CLOUD_LOCATION", "us-central1")
VEO_MODEL = os.environ.get("VEO_MODEL", "veo-3.1-generate-001")
GCS_BUCKET_NAME = os.environ.get("GCS_BUCKET_NAME", "")
SIGNED_URL_TTL_DAYS = _int("SIGNED_URL_TTL_DAYS", 7)

# Service-account JSON as a string (for hosted deployments)
_credentials_json = os.environ.get("GOOGLE_CREDENTIALS", "")
GOOGLE_CREDENTIALS = json.loads(_credentials_json) if _credentials_json else None

# ── R2 (optional permanent copy of finished videos) ──────────────────────────
R2_ENDPOINT = os.environ.get("R2_ENDPOINT", "")
R2_ACCESS_KEY_ID = os.environ.get("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.environ.get("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.environ.get("R2_BUCKET_NAME", "")
R2_PUBLIC_URL = os.environ.get("R2_PUBLIC_URL", "")

# ── Delivery ─────────────────────────────────────────────────────────────────
DELIVERY_MODE = os.environ.get("DELIVERY_MODE", "local")  # local | push
PROCESS_CALLBACK_URL = os.environ.get("PROCESS_CALLBACK_URL", "")
DELIVERY_CURRENT_SIGNING_KEY = os.environ.get("DELIVERY_CURRENT_SIGNING_KEY", "")
DELIVERY_NEXT_SIGNING_KEY = os.environ.get("DELIVERY_NEXT_SIGNING_KEY", "")
DELIVERY_MAX_ATTEMPTS = _int("DELIVERY_MAX_ATTEMPTS", 3)
DELIVERY_BASE_DELAY_SECONDS = float(os.environ.get("DELIVERY_BASE_DELAY_SECONDS", "2"))

CRON_SECRET = os.environ.get("CRON_SECRET", "")

# ── Processing ───────────────────────────────────────────────────────────────
WORKER_CONCURRENCY = _int("WORKER_CONCURRENCY", 2)
POLL_INTERVAL_SECONDS = float(os.environ.get("POLL_INTERVAL_SECONDS", "5"))
MAX_POLL_ATTEMPTS = _int("MAX_POLL_ATTEMPTS", 60)  # 5 minutes at 5s
STALE_PROCESSING_SECONDS = _int("STALE_PROCESSING_SECONDS", 600)
BILLING_PERIOD_DAYS = _int("BILLING_PERIOD_DAYS", 30)

MAX_SOURCE_IMAGES = 3


def is_development() -> bool:
    return ENVIRONMENT == "development"


def use_supabase() -> bool:
    return bool(SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY)
