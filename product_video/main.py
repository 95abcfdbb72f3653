import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from . import config, metrics
from .auth_middleware import CronAuthMiddleware
from .dispatch import CallbackDeliverer, LocalDispatchQueue, RedisDispatchQueue, fail_dead_lettered
from .logging_setup import configure_logging
from .pipeline import service
from .pipeline.errors import (
    AccountNotFoundError,
    DeliveryAuthError,
    DispatchError,
    InvalidPlanError,
    JobNotFoundError,
    SubmissionError,
)
from .pipeline.events import EventSink, LoggingEventSink
from .pipeline.job_store import JobStore, SupabaseJobStore
from .pipeline.memory_store import MemoryJobStore
from .pipeline.models import (
    AccountUsageResponse,
    DeliveryPayload,
    GenerateRequest,
    GenerateResponse,
    PlanChangeRequest,
    VideoResponse,
)
from .pipeline.processor import JobProcessor
from .pipeline.quota import plan_limit, remaining
from .pipeline.templates import get_all_templates
from .signing import SIGNATURE_HEADER, DeliveryVerifier
from .storage import R2Publisher, r2_configured
from .veo import VeoClient
from .worker import QueueWorker

logger = logging.getLogger(__name__)


# ── Lazy Redis client ─────────────────────────────────────────────────────────
_redis_client = None


def get_redis():
    """Get or create a Redis client. Returns None if Redis is not configured or unreachable."""
    global _redis_client
    if _redis_client is None and config.REDIS_URL:
        import redis
        client = redis.from_url(config.REDIS_URL, decode_responses=False)
        try:
            client.ping()
            logger.info(f"Redis connected: {config.REDIS_URL[:30]}...")
            _redis_client = client
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {e}, falling back to in-process dispatch")
    return _redis_client


# ── Runtime wiring ────────────────────────────────────────────────────────────

@dataclass
class Runtime:
    store: JobStore
    dispatcher: object
    processor: JobProcessor
    events: EventSink = field(default_factory=LoggingEventSink)
    verifier: DeliveryVerifier = field(default_factory=DeliveryVerifier)
    worker: Optional[QueueWorker] = None
    deliverer: Optional[CallbackDeliverer] = None

    def start(self):
        if self.worker is not None:
            self.worker.start()

    def stop(self):
        if self.worker is not None:
            self.worker.stop()
        if isinstance(self.dispatcher, LocalDispatchQueue):
            self.dispatcher.shutdown(wait=False)
        if self.deliverer is not None:
            self.deliverer.close()


def build_runtime() -> Runtime:
    events = LoggingEventSink()

    if config.use_supabase():
        store = SupabaseJobStore()
    else:
        logger.warning("Supabase not configured, using the in-memory job store (state is lost on restart)")
        store = MemoryJobStore()

    processor = JobProcessor(
        store,
        VeoClient(),
        events=events,
        publisher=R2Publisher() if r2_configured() else None,
    )

    deliverer = CallbackDeliverer() if config.DELIVERY_MODE == "push" else None
    handler = deliverer or processor.process
    on_dead_letter = fail_dead_lettered(store, events)

    r = get_redis()
    if r is not None:
        dispatcher = RedisDispatchQueue(r)
        worker = QueueWorker(r, handler, on_dead_letter=on_dead_letter)
    else:
        logger.info("No Redis, deliveries run on the in-process dispatch queue")
        dispatcher = LocalDispatchQueue(handler, on_dead_letter=on_dead_letter)
        worker = None

    logger.info(
        f"Runtime ready (store={store.__class__.__name__}, dispatch={dispatcher.__class__.__name__}, "
        f"mode={config.DELIVERY_MODE})"
    )
    return Runtime(
        store=store, dispatcher=dispatcher, processor=processor,
        events=events, worker=worker, deliverer=deliverer,
    )


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Logs every request start and end (status, duration) and feeds the http.* metrics."""

    async def dispatch(self, request: Request, call_next):
        logger.debug(f"{request.method} {request.url.path} started")
        start = time.time()
        response = await call_next(request)
        duration_ms = (time.time() - start) * 1000
        metrics.inc_counter(f"http.{response.status_code // 100}xx")
        metrics.record_latency("http.request", duration_ms)
        logger.info(f"{request.method} {request.url.path} {response.status_code} ({duration_ms:.0f}ms)")
        return response


# ── App ───────────────────────────────────────────────────────────────────────

def create_app(runtime: Optional[Runtime] = None, cron_secret: str = config.CRON_SECRET) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Worker starting up...")
        metrics.set_gauge("start_time", time.time())
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = build_runtime()
        app.state.runtime.start()
        yield
        logger.info("Worker shutting down...")
        app.state.runtime.stop()

    app = FastAPI(title="Product Video Generator", lifespan=lifespan)
    app.state.runtime = runtime
    app.add_middleware(CronAuthMiddleware, secret=cron_secret)
    app.add_middleware(RequestLogMiddleware)

    # ── Operational ──────────────────────────────────────────────────────

    @app.get("/health")
    def health_check():
        return {
            "status": "ok",
            "environment": config.ENVIRONMENT,
            "supabase_configured": config.use_supabase(),
            "redis_configured": bool(config.REDIS_URL),
            "delivery_mode": config.DELIVERY_MODE,
        }

    @app.get("/metrics")
    def metrics_endpoint(rt: Runtime = Depends(get_runtime)):
        """Snapshot of all worker metrics."""
        gauges = getattr(rt.dispatcher, "gauges", None)
        if gauges is not None:
            try:
                for name, value in gauges().items():
                    metrics.set_gauge(name, value)
            except Exception as e:
                logger.warning(f"Could not read queue gauges: {e}")
        return metrics.get_snapshot()

    @app.get("/templates")
    def list_templates():
        return {"templates": get_all_templates()}

    @app.get("/queue/status")
    def queue_status(job_id: str = Query(...), rt: Runtime = Depends(get_runtime)):
        """Queue position and delivery state for a job."""
        status = getattr(rt.dispatcher, "status", None)
        if status is None:
            return {"position": 0, "queue_length": 0, "status": "unknown", "retries": 0}
        return status(job_id)

    # ── Jobs ─────────────────────────────────────────────────────────────

    @app.post("/api/generate")
    def generate(request: GenerateRequest, rt: Runtime = Depends(get_runtime)):
        """
        Validate, check quota, create the job and enqueue it.

        Errors:
          - 400: missing fields, too many images, unknown template
          - 403: monthly limit reached (upgradeRequired)
          - 503: the job could not be queued (recorded on the job as failed)
        """
        try:
            job = service.submit_generation(rt.store, rt.dispatcher, request, rt.events)
        except SubmissionError as e:
            if e.upgrade_required:
                return JSONResponse({"error": e.code, "upgradeRequired": True}, status_code=403)
            return JSONResponse({"error": e.message, "code": e.code}, status_code=400)
        except DispatchError as e:
            return JSONResponse({"error": str(e), "jobId": e.job_id}, status_code=503)
        return GenerateResponse(job_id=job.id).model_dump(by_alias=True)

    @app.get("/api/videos")
    def list_videos(account_id: str = Query(...), rt: Runtime = Depends(get_runtime)):
        jobs = service.list_jobs(rt.store, account_id)
        return {"videos": [VideoResponse.from_job(j).model_dump(by_alias=True, mode="json") for j in jobs]}

    @app.get("/api/videos/{job_id}")
    def get_video(job_id: str, rt: Runtime = Depends(get_runtime)):
        try:
            job = service.get_job(rt.store, job_id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Job not found")
        return VideoResponse.from_job(job).model_dump(by_alias=True, mode="json")

    # ── Delivery callback ────────────────────────────────────────────────

    @app.post("/webhook/process-video")
    async def process_video(request: Request, rt: Runtime = Depends(get_runtime)):
        body = await request.body()

        if rt.verifier.configured:
            try:
                rt.verifier.verify(request.headers.get(SIGNATURE_HEADER), body)
            except DeliveryAuthError as e:
                rt.events.emit("delivery.rejected", reason=e.reason, path=request.url.path)
                return JSONResponse({"error": "Unauthorized"}, status_code=401)
        elif config.is_development():
            logger.warning("Skipping delivery signature verification in development")
        else:
            rt.events.emit("delivery.rejected", reason="no signing keys configured", path=request.url.path)
            return JSONResponse({"error": "Unauthorized"}, status_code=401)

        try:
            payload = DeliveryPayload.model_validate_json(body)
        except ValidationError as e:
            logger.warning(f"Malformed delivery body: {e.errors()[:1]}")
            return JSONResponse({"error": "Invalid payload"}, status_code=400)

        try:
            outcome = await run_in_threadpool(rt.processor.process, payload)
        except Exception as e:
            # Store or infrastructure failure; a non-2xx answer makes the queue retry
            logger.error(f"[{payload.job_id}] processing failed: {e}", exc_info=True)
            return JSONResponse({"error": str(e)}, status_code=500)

        return {"success": True, "jobId": payload.job_id, "outcome": outcome.value}

    # ── Scheduled maintenance (Bearer CRON_SECRET) ───────────────────────

    @app.api_route("/api/cron/reset-billing", methods=["GET", "POST"])
    def reset_billing(rt: Runtime = Depends(get_runtime)):
        return {"reset": service.reset_billing_cycles(rt.store)}

    @app.post("/api/cron/reconcile-jobs")
    def reconcile_jobs(rt: Runtime = Depends(get_runtime)):
        return {"redispatched": service.reconcile_stale_jobs(rt.store, rt.dispatcher)}

    # ── Accounts ─────────────────────────────────────────────────────────

    @app.get("/api/accounts/{account_id}")
    def get_account(account_id: str, rt: Runtime = Depends(get_runtime)):
        try:
            return _usage(service.get_account(rt.store, account_id))
        except AccountNotFoundError:
            raise HTTPException(status_code=404, detail="Account not found")

    @app.post("/api/accounts/{account_id}/plan")
    def change_plan(account_id: str, request: PlanChangeRequest, rt: Runtime = Depends(get_runtime)):
        """Upgrade to a purchasable plan; usage and billing cycle restart."""
        try:
            return _usage(service.upgrade_plan(rt.store, account_id, request.plan))
        except InvalidPlanError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except AccountNotFoundError:
            raise HTTPException(status_code=404, detail="Account not found")

    @app.delete("/api/accounts/{account_id}")
    def delete_account(account_id: str, rt: Runtime = Depends(get_runtime)):
        # Uninstall is idempotent; a missing account is not an error
        return {"deleted": service.delete_account(rt.store, account_id)}

    return app


def _usage(account) -> dict:
    return AccountUsageResponse(
        id=account.id,
        plan=account.plan,
        videos_used_this_month=account.videos_used_this_month,
        limit=plan_limit(account.plan),
        remaining=remaining(account.plan, account.videos_used_this_month),
        billing_cycle_start=account.billing_cycle_start.isoformat(),
    ).model_dump(by_alias=True)


configure_logging()
app = create_app()


if __name__ == "__main__":
    uvicorn.run("product_video.main:app", host="0.0.0.0", port=8000)
