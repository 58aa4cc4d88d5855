"""
Normalisation of gateway webhook payloads.

Providers disagree on field names; everything downstream only sees
``InboundMessage`` and ``StatusUpdate``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from prima.errors import ValidationError
from prima.models import DeliveryAction
from prima.services.phone import format_whatsapp_number
from prima.services.reminder_tracker import map_gateway_status

logger = logging.getLogger(__name__)

SENDER_FIELDS = ("sender", "phone", "from", "number", "wa_number")
TEXT_FIELDS = ("message", "text", "body")
ID_FIELDS = ("id", "message_id", "msgId")
TIME_FIELDS = ("timestamp", "time", "created_at")
STATUS_FIELDS = ("status", "state", "message_status")


@dataclass(frozen=True)
class InboundMessage:
    sender: str
    text: str
    provider_message_id: str | None = None
    timestamp: datetime | None = None
    sender_name: str | None = None
    device: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class StatusUpdate:
    provider_message_id: str
    status: str
    action: DeliveryAction | None
    timestamp: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


def _first(payload: dict[str, Any], names: tuple[str, ...]) -> Any:
    for name in names:
        value = payload.get(name)
        if value not in (None, ""):
            return value
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """Accept unix seconds / milliseconds or ISO-8601 strings."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = None
    if number is not None:
        if number > 1e12:
            number /= 1000.0
        try:
            return datetime.fromtimestamp(number, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable webhook timestamp %r", value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def normalize_incoming(payload: dict[str, Any]) -> InboundMessage:
    """Raise ``ValidationError`` when the sender or the body is missing."""
    sender_raw = _first(payload, SENDER_FIELDS)
    text_raw = _first(payload, TEXT_FIELDS)

    sender = format_whatsapp_number(str(sender_raw)) if sender_raw is not None else ""
    text = str(text_raw).strip() if text_raw is not None else ""
    if not sender:
        raise ValidationError("Inbound message has no sender")
    if not text:
        raise ValidationError("Inbound message has an empty body")

    message_id = _first(payload, ID_FIELDS)
    return InboundMessage(
        sender=sender,
        text=text,
        provider_message_id=str(message_id) if message_id is not None else None,
        timestamp=parse_timestamp(_first(payload, TIME_FIELDS)),
        sender_name=payload.get("name") or payload.get("pushname"),
        device=payload.get("device"),
        raw=payload,
    )


def normalize_status(payload: dict[str, Any]) -> StatusUpdate:
    message_id = _first(payload, ID_FIELDS)
    status = _first(payload, STATUS_FIELDS)
    if message_id is None or status is None:
        raise ValidationError("Status update needs a message id and a status")
    if isinstance(message_id, list):
        message_id = message_id[0] if message_id else None
        if message_id is None:
            raise ValidationError("Status update needs a message id and a status")

    timestamp = _first(payload, TIME_FIELDS)
    return StatusUpdate(
        provider_message_id=str(message_id),
        status=str(status),
        action=map_gateway_status(str(status)),
        timestamp=str(timestamp) if timestamp is not None else None,
        raw=payload,
    )
