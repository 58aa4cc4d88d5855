"""
Webhook signature verification.

The gateway signs the raw request body with the shared ``WEBHOOK_SECRET``
(HMAC-SHA256, hex digest).  The header may carry a ``sha256=`` prefix.

Usage:
    from prima.api.middleware.signature import verify_webhook_signature

    body = await request.body()
    verify_webhook_signature(body, request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER))
"""

import hashlib
import hmac
import logging
from typing import Optional

from prima.config import Settings, get_settings
from prima.errors import SignatureError

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    body: bytes,
    signature: Optional[str],
    settings: Optional[Settings] = None,
) -> None:
    """Raise ``SignatureError`` unless *signature* matches *body*.

    Unsigned requests are accepted only when ``ALLOW_UNSIGNED_WEBHOOKS`` is
    set (local development against a gateway sandbox).
    """
    settings = settings or get_settings()

    if settings.ALLOW_UNSIGNED_WEBHOOKS:
        return

    if not settings.WEBHOOK_SECRET:
        raise SignatureError("Webhook secret is not configured")
    if not signature:
        raise SignatureError("Missing webhook signature")

    provided = signature.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]

    expected = compute_signature(settings.WEBHOOK_SECRET, body)
    if not hmac.compare_digest(provided.lower(), expected):
        raise SignatureError("Invalid webhook signature")
