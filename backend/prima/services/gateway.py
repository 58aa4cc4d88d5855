"""
WhatsApp gateway transports.

A transport performs exactly one send attempt and classifies failures:
``GatewayTransientError`` for timeouts, connection problems and 5xx
responses; ``GatewayPermanentError`` for 4xx responses and logical
rejections.  Retries and circuit breaking live in ``delivery``.

Fonnte is the default provider (``POST {base}/send`` with the account token
in the ``Authorization`` header).  Twilio's WhatsApp channel is available
as an alternative.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from prima.config import Settings
from prima.errors import GatewayPermanentError, GatewayTransientError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayResponse:
    message_id: str | None
    raw: dict[str, Any] = field(default_factory=dict)


class ChatTransport(Protocol):
    name: str

    async def start(self) -> None: ...

    async def aclose(self) -> None: ...

    async def send(self, to: str, body: str) -> GatewayResponse: ...


# ---------------------------------------------------------------------------
# Fonnte
# ---------------------------------------------------------------------------

class FonnteTransport:
    name = "fonnte"

    def __init__(
        self,
        token: str,
        *,
        base_url: str = "https://api.fonnte.com",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
            self._owns_client = True

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(self, to: str, body: str) -> GatewayResponse:
        if not self._token:
            raise GatewayPermanentError("Fonnte not configured")
        if self._client is None:
            await self.start()

        try:
            response = await self._client.post(
                "/send",
                headers={"Authorization": self._token},
                json={"target": to, "message": body},
            )
        except httpx.TimeoutException as exc:
            raise GatewayTransientError(f"Fonnte timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise GatewayTransientError(f"Fonnte transport error: {exc}") from exc

        if response.status_code >= 500:
            raise GatewayTransientError(
                f"Fonnte HTTP {response.status_code}", status_code=response.status_code
            )
        if response.status_code >= 400:
            raise GatewayPermanentError(
                f"Fonnte HTTP {response.status_code}", status_code=response.status_code
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayTransientError("Fonnte returned a non-JSON body", status_code=response.status_code) from exc

        if not payload.get("status"):
            raise GatewayPermanentError(
                payload.get("reason") or "Fonnte API error",
                status_code=response.status_code,
                response=payload,
            )

        message_id = payload.get("id")
        if isinstance(message_id, list):
            message_id = message_id[0] if message_id else None
        return GatewayResponse(message_id=str(message_id) if message_id else None, raw=payload)


# ---------------------------------------------------------------------------
# Twilio (WhatsApp channel)
# ---------------------------------------------------------------------------

class TwilioTransport:
    name = "twilio"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        client: Client | None = None,
    ):
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from = from_number if from_number.startswith("whatsapp:") else f"whatsapp:{from_number}"
        self._client = client

    async def start(self) -> None:
        if self._client is None and self._account_sid and self._auth_token:
            self._client = Client(self._account_sid, self._auth_token)

    async def aclose(self) -> None:
        self._client = None

    async def send(self, to: str, body: str) -> GatewayResponse:
        if self._client is None:
            await self.start()
        if self._client is None:
            raise GatewayPermanentError("Twilio credentials not configured")

        try:
            # the Twilio SDK is synchronous; keep it off the event loop
            message = await asyncio.to_thread(
                self._client.messages.create,
                body=body,
                from_=self._from,
                to=f"whatsapp:+{to}",
            )
        except TwilioRestException as exc:
            error = GatewayTransientError if (exc.status or 0) >= 500 else GatewayPermanentError
            raise error(f"Twilio error {exc.code}: {exc.msg}", status_code=exc.status) from exc
        except OSError as exc:
            raise GatewayTransientError(f"Twilio transport error: {exc}") from exc

        return GatewayResponse(message_id=message.sid, raw={"sid": message.sid, "status": message.status})


def build_transport(settings: Settings) -> ChatTransport:
    if settings.GATEWAY_PROVIDER == "twilio":
        return TwilioTransport(
            settings.TWILIO_ACCOUNT_SID,
            settings.TWILIO_AUTH_TOKEN,
            settings.TWILIO_WHATSAPP_NUMBER,
        )
    if not settings.FONNTE_TOKEN:
        logger.warning("FONNTE_TOKEN not configured — outbound WhatsApp sending disabled")
    return FonnteTransport(
        settings.FONNTE_TOKEN,
        base_url=settings.FONNTE_BASE_URL,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    )
