"""
Signed delivery callbacks.

In push mode every delivery POST carries an `Upstash-Signature` header: an
HS256 JWT whose `body` claim is the unpadded base64url SHA-256 of the exact
request body. Two keys are accepted (current + next) so they can be rotated
without dropping deliveries.
"""

import base64
import hashlib
import logging
import time
import uuid
from typing import Optional

import jwt

from . import config
from .pipeline.errors import DeliveryAuthError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Upstash-Signature"
ISSUER = "product-video-generator"
TOKEN_TTL_SECONDS = 300
CLOCK_SKEW_SECONDS = 5


def body_digest(body: bytes) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode("ascii").rstrip("=")


class DeliverySigner:
    def __init__(self, key: str = config.DELIVERY_CURRENT_SIGNING_KEY, issuer: str = ISSUER):
        if not key:
            raise ValueError("A signing key is required")
        self.key = key
        self.issuer = issuer

    def sign(self, body: bytes, url: str, now: Optional[float] = None) -> str:
        now = int(now if now is not None else time.time())
        claims = {
            "iss": self.issuer,
            "sub": url,
            "iat": now,
            "nbf": now,
            "exp": now + TOKEN_TTL_SECONDS,
            "jti": uuid.uuid4().hex,
            "body": body_digest(body),
        }
        return jwt.encode(claims, self.key, algorithm="HS256")


class DeliveryVerifier:
    """
    Usage:
        verifier = DeliveryVerifier(current_key, next_key)
        verifier.verify(request.headers["Upstash-Signature"], raw_body)
    """

    def __init__(
        self,
        current_key: str = config.DELIVERY_CURRENT_SIGNING_KEY,
        next_key: str = config.DELIVERY_NEXT_SIGNING_KEY,
        issuer: str = ISSUER,
    ):
        self.keys = [k for k in (current_key, next_key) if k]
        self.issuer = issuer

    @property
    def configured(self) -> bool:
        return bool(self.keys)

    def verify(self, signature: Optional[str], body: bytes, url: Optional[str] = None) -> dict:
        """Return the verified claims or raise DeliveryAuthError."""
        if not self.keys:
            raise DeliveryAuthError("no signing keys configured")
        if not signature:
            raise DeliveryAuthError("missing signature")

        last_error = "invalid signature"
        for key in self.keys:
            try:
                claims = jwt.decode(
                    signature,
                    key,
                    algorithms=["HS256"],
                    issuer=self.issuer,
                    leeway=CLOCK_SKEW_SECONDS,
                    options={"require": ["exp", "nbf", "iat", "iss", "body"]},
                )
            except jwt.InvalidSignatureError:
                continue
            except jwt.PyJWTError as e:
                # Signed with this key but the claims are unacceptable
                last_error = str(e)
                break
            else:
                if claims.get("body") != body_digest(body):
                    raise DeliveryAuthError("body hash mismatch")
                if url is not None and claims.get("sub") not in (None, url):
                    raise DeliveryAuthError("url mismatch")
                return claims

        raise DeliveryAuthError(last_error)
