"""
WhatsApp gateway webhooks.

Endpoints:
    POST /webhooks/whatsapp/incoming — patient replies (signed, JSON or form body)
    GET  /webhooks/whatsapp/incoming — ping
    POST /webhooks/whatsapp/status   — delivery status callbacks (signed)
    GET  /webhooks/whatsapp/status   — ping

Every signed request is answered with 200 and a processing summary, even
when the message itself was dropped; the gateway would otherwise keep
redelivering it.  Only a bad signature gets a 401.
"""

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from prima.api.deps import get_engine
from prima.api.middleware.signature import verify_webhook_signature
from prima.errors import SignatureError, ValidationError
from prima.services.engine import ReminderEngine
from prima.services.idempotency import status_event_key
from prima.services.inbound import normalize_status

router = APIRouter()
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class IncomingResult(BaseModel):
    ok: bool = True
    state: str
    action: str
    patient_id: Optional[str] = None
    intent: Optional[str] = None
    confidence: Optional[float] = None
    attempt: Optional[int] = None
    reply_sent: bool = False
    error: Optional[str] = None


class StatusResult(BaseModel):
    ok: bool = True
    processed: bool
    reason: Optional[str] = None
    action: Optional[str] = None
    reminder_id: Optional[str] = None


class PingResponse(BaseModel):
    ok: bool = True
    webhook: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _verified_payload(request: Request, engine: ReminderEngine) -> dict[str, Any]:
    """Check the signature over the raw body, then decode JSON or form data."""
    body = await request.body()
    try:
        verify_webhook_signature(
            body,
            request.headers.get(engine.settings.WEBHOOK_SIGNATURE_HEADER),
            engine.settings,
        )
    except SignatureError as exc:
        logger.warning("Rejected webhook %s: %s", request.url.path, exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))

    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            logger.warning("Webhook %s sent invalid JSON", request.url.path)
            return {}
        return payload if isinstance(payload, dict) else {}

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/webhooks/whatsapp/incoming", response_model=PingResponse)
async def incoming_ping():
    return PingResponse(webhook="incoming")


@router.post("/webhooks/whatsapp/incoming", response_model=IncomingResult)
async def incoming_message(request: Request, engine: ReminderEngine = Depends(get_engine)):
    """Run one patient reply through the response orchestrator."""
    payload = await _verified_payload(request, engine)
    result = await engine.orchestrator.handle(payload)
    return IncomingResult(**result.summary())


@router.get("/webhooks/whatsapp/status", response_model=PingResponse)
async def status_ping():
    return PingResponse(webhook="status")


@router.post("/webhooks/whatsapp/status", response_model=StatusResult)
async def status_update(request: Request, engine: ReminderEngine = Depends(get_engine)):
    """Record a provider delivery status against the reminder it belongs to."""
    payload = await _verified_payload(request, engine)

    try:
        update = normalize_status(payload)
    except ValidationError as exc:
        logger.warning("Dropping malformed status callback: %s", exc)
        return StatusResult(processed=False, reason="invalid_payload")

    if update.action is None:
        logger.info("Ignoring unmapped gateway status %r for %s", update.status, update.provider_message_id)
        return StatusResult(processed=False, reason="unknown_status")

    key = status_event_key(update.provider_message_id, update.status, update.timestamp)
    if not await engine.idempotency.claim(key):
        return StatusResult(processed=False, reason="duplicate", action=update.action.value)

    try:
        log = await engine.tracker.record_delivery_by_gateway_id(
            update.provider_message_id, update.action, gateway_response=update.raw
        )
    except Exception:
        logger.exception("Failed to record status %s for %s", update.status, update.provider_message_id)
        await engine.idempotency.release(key)
        return StatusResult(processed=False, reason="error", action=update.action.value)

    if log is None:
        # unknown message id may just mean the send has not been recorded yet
        await engine.idempotency.release(key)
        return StatusResult(processed=False, reason="no_change", action=update.action.value)
    return StatusResult(processed=True, action=update.action.value, reminder_id=str(log.reminder_id))
