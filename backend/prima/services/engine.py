"""
Engine container: builds every reminder-engine service from settings and
owns their lifecycle.

There are no module-level singletons.  The FastAPI app creates one engine at
startup (``app.state.engine``); each Celery task run creates its own.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import async_sessionmaker

from prima.clock import Clock, utcnow
from prima.config import Settings, get_settings
from prima.repositories.base import ContextRepository, PatientRepository, ReminderRepository
from prima.services.circuit_breaker import CircuitBreaker
from prima.services.conversation_context import ConversationContextManager
from prima.services.delivery import DeliveryService
from prima.services.gateway import ChatTransport, build_transport
from prima.services.idempotency import IdempotencyStore
from prima.services.patient_locks import PatientLocks
from prima.services.reminder_sender import ReminderSender
from prima.services.reminder_tracker import ReminderTracker
from prima.services.response_orchestrator import EscalationSink, ResponseOrchestrator

logger = logging.getLogger(__name__)


class ReminderEngine:

    def __init__(
        self,
        settings: Settings,
        *,
        patients: PatientRepository,
        reminders: ReminderRepository,
        contexts: ContextRepository,
        transport: ChatTransport | None = None,
        redis: aioredis.Redis | None = None,
        escalate: EscalationSink | None = None,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.redis = redis
        self.patients = patients
        self.reminders = reminders
        self.conversations = contexts

        self.breaker = CircuitBreaker(
            "whatsapp",
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            reset_timeout=settings.CIRCUIT_RESET_SECONDS,
            half_open_successes=settings.CIRCUIT_HALF_OPEN_SUCCESSES,
        )
        self.delivery = DeliveryService(
            transport or build_transport(settings),
            self.breaker,
            max_attempts=settings.GATEWAY_MAX_ATTEMPTS,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            backoff_base=settings.GATEWAY_BACKOFF_BASE_SECONDS,
            backoff_max=settings.GATEWAY_BACKOFF_MAX_SECONDS,
            sleep=sleep,
        )
        self.idempotency = IdempotencyStore(redis, ttl_seconds=settings.IDEMPOTENCY_TTL_SECONDS)
        self.locks = PatientLocks(redis, timeout=settings.patient_lock_timeout)

        self.tracker = ReminderTracker(reminders, clock=clock)
        self.contexts = ConversationContextManager(
            contexts,
            default_ttl=timedelta(hours=settings.CONTEXT_TTL_HOURS),
            retention=timedelta(days=settings.CONTEXT_RETENTION_DAYS),
            clock=clock,
        )
        self.sender = ReminderSender(
            patients=patients,
            tracker=self.tracker,
            contexts=self.contexts,
            delivery=self.delivery,
            locks=self.locks,
            clock=clock,
            timezone=settings.REMINDER_TIMEZONE,
        )
        self.orchestrator = ResponseOrchestrator(
            patients=patients,
            tracker=self.tracker,
            contexts=self.contexts,
            delivery=self.delivery,
            idempotency=self.idempotency,
            locks=self.locks,
            escalate=escalate,
            clock=clock,
            bucket_seconds=settings.IDEMPOTENCY_BUCKET_SECONDS,
            timezone=settings.REMINDER_TIMEZONE,
        )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        escalate: EscalationSink | None = None,
        session_factory: async_sessionmaker | None = None,
    ) -> "ReminderEngine":
        """Production wiring: PostgreSQL repositories, Redis, configured gateway.

        Celery tasks pass their own *session_factory* because asyncpg
        connections cannot be shared across event loops.
        """
        from prima.db.postgres import async_session
        from prima.repositories.sql import SqlContextRepository, SqlPatientRepository, SqlReminderRepository

        settings = settings or get_settings()
        factory = session_factory or async_session
        redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True) if settings.USE_REDIS else None
        return cls(
            settings,
            patients=SqlPatientRepository(factory),
            reminders=SqlReminderRepository(factory),
            contexts=SqlContextRepository(factory),
            redis=redis,
            escalate=escalate,
        )

    @classmethod
    def in_memory(
        cls,
        settings: Settings | None = None,
        *,
        transport: ChatTransport | None = None,
        escalate: EscalationSink | None = None,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "ReminderEngine":
        """Single-process wiring without PostgreSQL or Redis."""
        from prima.repositories.memory import (
            InMemoryContextRepository,
            InMemoryPatientRepository,
            InMemoryReminderRepository,
        )

        return cls(
            settings or get_settings(),
            patients=InMemoryPatientRepository(),
            reminders=InMemoryReminderRepository(),
            contexts=InMemoryContextRepository(),
            transport=transport,
            escalate=escalate,
            clock=clock,
            sleep=sleep,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.delivery.start()
        if self.redis is not None:
            try:
                await self.redis.ping()
                logger.info("Redis connected for idempotency keys and patient locks")
            except RedisError as exc:
                logger.warning("Redis unreachable (%s); falling back to in-process state", exc)
        logger.info("Reminder engine started (gateway=%s)", self.delivery.transport.name)

    async def stop(self) -> None:
        await self.delivery.stop()
        if self.redis is not None:
            await self.redis.aclose()
        logger.info("Reminder engine stopped")

    def health(self) -> dict[str, Any]:
        return {
            "gateway": self.delivery.transport.name,
            "circuit_breaker": self.breaker.snapshot(),
            "redis": self.redis is not None,
        }
