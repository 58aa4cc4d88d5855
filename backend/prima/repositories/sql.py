"""
PostgreSQL repositories (SQLAlchemy async ORM).

Every public method opens its own session through ``session_scope`` so the
call is one transaction.  ``expire_on_commit=False`` on the session factory
keeps returned instances readable after the session closes.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from prima.db.postgres import async_session, session_scope
from prima.models import (
    ConversationContext,
    DeliveryAction,
    DeliveryLog,
    ManualConfirmation,
    Patient,
    Reminder,
)

logger = logging.getLogger(__name__)


class _SqlRepository:
    def __init__(self, session_factory: async_sessionmaker = async_session):
        self._session_factory = session_factory

    def _scope(self):
        return session_scope(self._session_factory)


# ---------------------------------------------------------------------------
# Patients
# ---------------------------------------------------------------------------

class SqlPatientRepository(_SqlRepository):

    async def add(self, patient: Patient) -> Patient:
        async with self._scope() as db:
            db.add(patient)
            await db.flush()
            await db.refresh(patient)
        return patient

    async def get(self, patient_id: uuid.UUID) -> Patient | None:
        async with self._scope() as db:
            return await db.get(Patient, patient_id)

    async def find_by_phone(self, phones: list[str]) -> Patient | None:
        if not phones:
            return None
        async with self._scope() as db:
            result = await db.execute(
                select(Patient)
                .where(
                    Patient.phone.in_(phones),
                    Patient.deleted_at.is_(None),
                    Patient.is_active.is_(True),
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def update(self, patient_id: uuid.UUID, **fields: Any) -> Patient | None:
        async with self._scope() as db:
            patient = await db.get(Patient, patient_id)
            if patient is None:
                return None
            for key, value in fields.items():
                setattr(patient, key, value)
            await db.flush()
            await db.refresh(patient)
            return patient


# ---------------------------------------------------------------------------
# Reminders, delivery logs, confirmations
# ---------------------------------------------------------------------------

class SqlReminderRepository(_SqlRepository):

    async def add(self, reminder: Reminder) -> Reminder:
        async with self._scope() as db:
            db.add(reminder)
            await db.flush()
            await db.refresh(reminder)
        return reminder

    async def get(self, reminder_id: uuid.UUID) -> Reminder | None:
        async with self._scope() as db:
            result = await db.execute(
                select(Reminder).where(Reminder.id == reminder_id, Reminder.deleted_at.is_(None))
            )
            return result.scalar_one_or_none()

    async def list_for_patient(self, patient_id: uuid.UUID) -> list[Reminder]:
        async with self._scope() as db:
            result = await db.execute(
                select(Reminder)
                .where(Reminder.patient_id == patient_id, Reminder.deleted_at.is_(None))
                .order_by(Reminder.scheduled_time)
            )
            return list(result.scalars().all())

    async def list_active(self) -> list[Reminder]:
        async with self._scope() as db:
            result = await db.execute(
                select(Reminder).where(Reminder.is_active.is_(True), Reminder.deleted_at.is_(None))
            )
            return list(result.scalars().all())

    async def find_by_gateway_message_id(self, gateway_message_id: str) -> Reminder | None:
        async with self._scope() as db:
            result = await db.execute(
                select(Reminder)
                .where(Reminder.gateway_message_id == gateway_message_id, Reminder.deleted_at.is_(None))
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def update(self, reminder_id: uuid.UUID, **fields: Any) -> Reminder | None:
        async with self._scope() as db:
            reminder = await db.get(Reminder, reminder_id)
            if reminder is None:
                return None
            for key, value in fields.items():
                setattr(reminder, key, value)
            await db.flush()
            await db.refresh(reminder)
            return reminder

    async def deactivate_for_patient(self, patient_id: uuid.UUID) -> int:
        async with self._scope() as db:
            result = await db.execute(
                update(Reminder)
                .where(Reminder.patient_id == patient_id, Reminder.is_active.is_(True))
                .values(is_active=False)
            )
            return result.rowcount or 0

    async def list_logs(self, reminder_id: uuid.UUID) -> list[DeliveryLog]:
        async with self._scope() as db:
            result = await db.execute(
                select(DeliveryLog)
                .where(DeliveryLog.reminder_id == reminder_id)
                .order_by(DeliveryLog.created_at.desc())
            )
            return list(result.scalars().all())

    async def find_log(self, gateway_message_id: str, action: DeliveryAction) -> DeliveryLog | None:
        async with self._scope() as db:
            result = await db.execute(
                select(DeliveryLog).where(
                    DeliveryLog.gateway_message_id == gateway_message_id,
                    DeliveryLog.action == action,
                )
            )
            return result.scalar_one_or_none()

    async def append_log(self, log: DeliveryLog, **reminder_fields: Any) -> DeliveryLog | None:
        try:
            async with self._scope() as db:
                db.add(log)
                if reminder_fields:
                    await self._apply_reminder_fields(db, log.reminder_id, reminder_fields)
                await db.flush()
        except IntegrityError:
            # uq_delivery_logs_gateway_action: a concurrent writer got there first
            logger.info(
                "Delivery log %s/%s already recorded", log.gateway_message_id, log.action.value
            )
            return None
        return log

    async def list_confirmations(self, patient_id: uuid.UUID) -> list[ManualConfirmation]:
        async with self._scope() as db:
            result = await db.execute(
                select(ManualConfirmation)
                .where(ManualConfirmation.patient_id == patient_id)
                .order_by(ManualConfirmation.confirmed_at.desc())
            )
            return list(result.scalars().all())

    async def append_confirmation(
        self,
        confirmation: ManualConfirmation,
        log: DeliveryLog | None,
        **reminder_fields: Any,
    ) -> ManualConfirmation:
        async with self._scope() as db:
            db.add(confirmation)
            if log is not None:
                db.add(log)
            if reminder_fields and confirmation.reminder_id is not None:
                await self._apply_reminder_fields(db, confirmation.reminder_id, reminder_fields)
            await db.flush()
        return confirmation

    @staticmethod
    async def _apply_reminder_fields(db, reminder_id: uuid.UUID, fields: dict[str, Any]) -> None:
        reminder = await db.get(Reminder, reminder_id, with_for_update=True)
        if reminder is None:
            return
        for key, value in fields.items():
            setattr(reminder, key, value)


# ---------------------------------------------------------------------------
# Conversation contexts
# ---------------------------------------------------------------------------

class SqlContextRepository(_SqlRepository):

    async def get(self, context_id: uuid.UUID) -> ConversationContext | None:
        async with self._scope() as db:
            return await db.get(ConversationContext, context_id)

    async def latest_for_patient(self, patient_id: uuid.UUID) -> ConversationContext | None:
        async with self._scope() as db:
            result = await db.execute(
                select(ConversationContext)
                .where(
                    ConversationContext.patient_id == patient_id,
                    ConversationContext.deleted_at.is_(None),
                )
                .order_by(ConversationContext.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def replace(self, context: ConversationContext, now: datetime) -> ConversationContext:
        async with self._scope() as db:
            await db.execute(
                update(ConversationContext)
                .where(
                    ConversationContext.patient_id == context.patient_id,
                    ConversationContext.deleted_at.is_(None),
                )
                .values(deleted_at=now)
            )
            db.add(context)
            await db.flush()
        return context

    async def soft_delete_for_patient(self, patient_id: uuid.UUID, now: datetime) -> int:
        async with self._scope() as db:
            result = await db.execute(
                update(ConversationContext)
                .where(
                    ConversationContext.patient_id == patient_id,
                    ConversationContext.deleted_at.is_(None),
                )
                .values(deleted_at=now)
            )
            return result.rowcount or 0

    async def increment_attempt(self, context_id: uuid.UUID) -> int | None:
        async with self._scope() as db:
            result = await db.execute(
                update(ConversationContext)
                .where(ConversationContext.id == context_id)
                .values(attempt_count=ConversationContext.attempt_count + 1)
                .returning(ConversationContext.attempt_count)
            )
            return result.scalar_one_or_none()

    async def purge(self, before: datetime) -> int:
        async with self._scope() as db:
            result = await db.execute(
                delete(ConversationContext).where(
                    or_(
                        and_(
                            ConversationContext.deleted_at.is_not(None),
                            ConversationContext.deleted_at < before,
                        ),
                        ConversationContext.expires_at < before,
                    )
                )
            )
            return result.rowcount or 0
