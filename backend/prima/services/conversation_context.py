"""
Conversation context manager.

Per patient: NONE -> AWAITING (attempt 0) -> AWAITING (attempt n+1 on every
unmatched reply) -> NONE (cleared on a matched reply, or expired).

Expiry is evaluated when a context is read; ``cleanup_expired`` only
reclaims rows.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from prima.clock import Clock, as_utc, utcnow
from prima.errors import NotFoundError
from prima.models import ContextKind, ConversationContext, ExpectedShape
from prima.repositories.base import ContextRepository

logger = logging.getLogger(__name__)


def is_active(context: ConversationContext | None, now: datetime) -> bool:
    if context is None or context.deleted_at is not None:
        return False
    return as_utc(context.expires_at) > now


class ConversationContextManager:

    def __init__(
        self,
        contexts: ContextRepository,
        *,
        default_ttl: timedelta = timedelta(hours=24),
        retention: timedelta = timedelta(days=7),
        clock: Clock = utcnow,
    ):
        self._contexts = contexts
        self._default_ttl = default_ttl
        self._retention = retention
        self._clock = clock

    async def set_context(
        self,
        patient_id: uuid.UUID,
        kind: ContextKind,
        expected_shape: ExpectedShape = ExpectedShape.YES_NO,
        related_entity_id: str | uuid.UUID | None = None,
        ttl: timedelta | None = None,
    ) -> ConversationContext:
        """Start awaiting a reply; any earlier context for the patient is retired."""
        now = self._clock()
        context = ConversationContext(
            id=uuid.uuid4(),
            patient_id=patient_id,
            kind=kind,
            expected_shape=expected_shape,
            related_entity_id=str(related_entity_id) if related_entity_id is not None else None,
            attempt_count=0,
            created_at=now,
            expires_at=now + (ttl or self._default_ttl),
            deleted_at=None,
        )
        await self._contexts.replace(context, now)
        logger.info(
            "Context %s set for patient %s (related=%s)",
            kind.value, patient_id, context.related_entity_id,
        )
        return context

    async def load_active_context(self, patient_id: uuid.UUID) -> ConversationContext | None:
        context = await self._contexts.latest_for_patient(patient_id)
        if not is_active(context, self._clock()):
            return None
        return context

    async def increment_attempt(self, context_id: uuid.UUID) -> int:
        """Bump the unmatched-reply counter.  There is no upper bound."""
        count = await self._contexts.increment_attempt(context_id)
        if count is None:
            raise NotFoundError(f"Conversation context {context_id} not found")
        return count

    async def clear_context(self, patient_id: uuid.UUID) -> bool:
        cleared = await self._contexts.soft_delete_for_patient(patient_id, self._clock())
        return cleared > 0

    async def cleanup_expired(self, retention: timedelta | None = None) -> int:
        cutoff = self._clock() - (retention if retention is not None else self._retention)
        purged = await self._contexts.purge(cutoff)
        if purged:
            logger.info("Purged %d stale conversation contexts", purged)
        return purged
