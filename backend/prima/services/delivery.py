"""
Delivery resilience layer: the single outbound ``send(to, body)`` used by
every part of the engine.

Each send goes through, outermost first:

* retry with exponential backoff and jitter (tenacity), only for
  ``GatewayTransientError``; open-circuit rejections are not retried
* the circuit breaker
* a per-attempt timeout (``asyncio.wait_for``)
* the gateway transport

``send`` never raises; failures come back as ``SendResult(success=False)``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from prima.errors import CircuitOpenError, GatewayError, GatewayTransientError
from prima.services.circuit_breaker import CircuitBreaker
from prima.services.gateway import ChatTransport, GatewayResponse
from prima.services.phone import format_whatsapp_number, mask_phone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    success: bool
    provider_message_id: str | None = None
    error: str | None = None
    attempts: int = 0
    retryable: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


class DeliveryService:

    def __init__(
        self,
        transport: ChatTransport,
        breaker: CircuitBreaker,
        *,
        max_attempts: int = 3,
        timeout: float = 10.0,
        backoff_base: float = 2.0,
        backoff_max: float = 10.0,
        jitter: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.breaker = breaker
        self._max_attempts = max(1, max_attempts)
        self._timeout = timeout
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._jitter = jitter
        self._sleep = sleep

    async def start(self) -> None:
        await self.transport.start()

    async def stop(self) -> None:
        await self.transport.aclose()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=1, min=self._backoff_base, max=self._backoff_max)
            + wait_random(0, self._jitter),
            retry=retry_if_exception_type(GatewayTransientError) & retry_if_not_exception_type(CircuitOpenError),
            sleep=self._sleep,
            reraise=True,
        )

    async def _attempt(self, to: str, body: str) -> GatewayResponse:
        try:
            return await asyncio.wait_for(self.transport.send(to, body), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise GatewayTransientError(f"{self.transport.name} send timed out after {self._timeout}s") from exc

    async def send(self, to: str, body: str) -> SendResult:
        target = format_whatsapp_number(to)
        if not target:
            return SendResult(success=False, error="Invalid recipient number")

        attempts = 0
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    response = await self.breaker.call(self._attempt, target, body)
        except CircuitOpenError as exc:
            logger.warning("Send to %s skipped: %s", mask_phone(target), exc)
            return SendResult(success=False, error=str(exc), attempts=attempts, retryable=True)
        except GatewayError as exc:
            logger.warning(
                "Send to %s failed after %d attempt(s): %s", mask_phone(target), attempts, exc
            )
            return SendResult(
                success=False,
                error=str(exc),
                attempts=attempts,
                retryable=isinstance(exc, GatewayTransientError),
                raw=exc.response,
            )
        except Exception as exc:
            logger.exception("Unexpected error sending to %s", mask_phone(target))
            return SendResult(success=False, error=str(exc), attempts=attempts)

        logger.info(
            "Message sent to %s via %s (id=%s, attempts=%d)",
            mask_phone(target), self.transport.name, response.message_id, attempts,
        )
        return SendResult(
            success=True,
            provider_message_id=response.message_id,
            attempts=attempts,
            raw=response.raw,
        )
