"""
Bearer-secret authentication for the scheduled maintenance endpoints.

All /api/cron/* endpoints require `Authorization: Bearer <CRON_SECRET>`.
The delivery webhook authenticates itself with a signed body instead
(see signing.py) and is not handled here.
"""

import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from . import config


class CronAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to /api/cron/* endpoints."""

    PROTECTED_PREFIX = "/api/cron/"

    def __init__(self, app, secret: str = config.CRON_SECRET):
        super().__init__(app)
        self.secret = secret

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(self.PROTECTED_PREFIX):
            return await call_next(request)

        if not self.secret:
            # In development without the secret set, allow all traffic
            if config.is_development():
                return await call_next(request)
            return JSONResponse({"error": "CRON_SECRET not configured"}, status_code=500)

        provided = request.headers.get("Authorization", "")
        if not secrets.compare_digest(provided, f"Bearer {self.secret}"):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)

        return await call_next(request)
