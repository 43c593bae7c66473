"""
Webhook signature verification

Producers sign the raw request body with HMAC-SHA256 using the shared
secret and send the hex digest in ``X-Webhook-Signature`` (or GitHub-style
``X-Hub-Signature-256``), optionally prefixed with ``sha256=``.
"""

import hashlib
import hmac
from typing import Optional

import structlog
from fastapi import Request

from commerce_tracking.errors import AuthenticationError

logger = structlog.get_logger(__name__)

SIGNATURE_HEADERS = ("X-Webhook-Signature", "X-Hub-Signature-256")
SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def signature_matches(secret: str, body: bytes, provided: Optional[str]) -> bool:
    if not provided:
        return False
    provided = provided.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    expected = compute_signature(secret, body).encode("ascii")
    # Header values may carry any latin-1 text; compare as bytes
    return hmac.compare_digest(expected, provided.lower().encode("utf-8", "replace"))


async def verify_signature(request: Request) -> None:
    """
    FastAPI dependency guarding signed webhook endpoints.

    Raises:
        AuthenticationError: the signature header is missing or does not match
    """
    provided = next((request.headers[h] for h in SIGNATURE_HEADERS if h in request.headers), None)
    if not provided:
        logger.warning("Webhook signature missing", path=request.url.path)
        raise AuthenticationError("Webhook signature missing")

    body = await request.body()
    secret = request.app.state.service.settings.webhook.secret.get_secret_value()
    if not signature_matches(secret, body, provided):
        logger.warning("Invalid webhook signature", path=request.url.path)
        raise AuthenticationError("Invalid webhook signature")
