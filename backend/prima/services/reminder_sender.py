"""
Outbound reminder and verification sends.

A successful send records the delivery and opens the conversation context
that the patient's reply will be matched against.  A failed send is
recorded as a FAILED delivery and leaves the context alone.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from zoneinfo import ZoneInfo

from prima.clock import Clock, as_utc, utcnow
from prima.errors import NotFoundError, ValidationError
from prima.models import (
    ContextKind,
    DeliveryAction,
    ExpectedShape,
    Patient,
    Reminder,
    VerificationStatus,
)
from prima.repositories.base import PatientRepository
from prima.services import messages
from prima.services.conversation_context import ConversationContextManager
from prima.services.delivery import DeliveryService, SendResult
from prima.services.patient_locks import PatientLocks
from prima.services.reminder_tracker import ReminderTracker

logger = logging.getLogger(__name__)


def is_due(reminder: Reminder, now_local: datetime) -> bool:
    """True when *reminder* should go out at *now_local* and has not gone out today."""
    if reminder.is_active is False or reminder.deleted_at is not None:
        return False
    today: date = now_local.date()
    if reminder.start_date and today < reminder.start_date:
        return False
    if reminder.end_date and today > reminder.end_date:
        return False
    if now_local.strftime("%H:%M") < reminder.scheduled_time:
        return False
    if reminder.sent_at is not None and as_utc(reminder.sent_at).astimezone(now_local.tzinfo).date() >= today:
        return False
    return True


class ReminderSender:

    def __init__(
        self,
        *,
        patients: PatientRepository,
        tracker: ReminderTracker,
        contexts: ConversationContextManager,
        delivery: DeliveryService,
        locks: PatientLocks,
        clock: Clock = utcnow,
        timezone: str = "Asia/Jakarta",
    ):
        self._patients = patients
        self._tracker = tracker
        self._contexts = contexts
        self._delivery = delivery
        self._locks = locks
        self._clock = clock
        self._timezone = ZoneInfo(timezone)

    async def _get_patient(self, patient_id: uuid.UUID) -> Patient:
        patient = await self._patients.get(patient_id)
        if patient is None or patient.deleted_at is not None:
            raise NotFoundError(f"Patient {patient_id} not found")
        return patient

    async def send_reminder(self, reminder_id: uuid.UUID, *, only_if_due: bool = False) -> SendResult | None:
        """Send *reminder_id* now.

        With *only_if_due* the schedule is re-checked under the patient lock
        and ``None`` is returned when another worker already sent it.
        """
        reminder = await self._tracker.get_reminder(reminder_id)
        patient = await self._get_patient(reminder.patient_id)
        if patient.is_active is False or patient.verification_status != VerificationStatus.VERIFIED:
            raise ValidationError(f"Patient {patient.id} is not verified for reminders")

        async with self._locks.hold(patient.id):
            if only_if_due:
                reminder = await self._tracker.get_reminder(reminder_id)
                if not is_due(reminder, self._clock().astimezone(self._timezone)):
                    logger.info("Reminder %s is no longer due; skipping", reminder_id)
                    return None
            result = await self._delivery.send(patient.phone, messages.reminder_message(patient.name, reminder.message))
            if result.success:
                await self._tracker.record_delivery(
                    reminder.id,
                    DeliveryAction.SENT,
                    gateway_response=result.raw,
                    gateway_message_id=result.provider_message_id,
                    metadata={"attempts": result.attempts},
                )
                await self._contexts.set_context(
                    patient.id,
                    ContextKind.REMINDER_CONFIRMATION,
                    ExpectedShape.YES_NO,
                    related_entity_id=reminder.id,
                )
            else:
                await self._tracker.record_delivery(
                    reminder.id,
                    DeliveryAction.FAILED,
                    gateway_response={"error": result.error, **result.raw},
                    metadata={"attempts": result.attempts, "retryable": result.retryable},
                )
        return result

    async def send_verification(self, patient_id: uuid.UUID) -> SendResult:
        patient = await self._get_patient(patient_id)

        async with self._locks.hold(patient.id):
            result = await self._delivery.send(patient.phone, messages.verification_prompt(patient.name))
            if result.success:
                await self._patients.update(
                    patient.id, verification_status=VerificationStatus.PENDING_VERIFICATION
                )
                await self._contexts.set_context(patient.id, ContextKind.VERIFICATION, ExpectedShape.YES_NO)
            else:
                logger.warning("Verification prompt to patient %s failed: %s", patient.id, result.error)
        return result

    async def due_reminders(self, now: datetime | None = None) -> list[Reminder]:
        now_local = (now or self._clock()).astimezone(self._timezone)
        reminders = await self._tracker.list_active_reminders()
        return [r for r in reminders if is_due(r, now_local)]
