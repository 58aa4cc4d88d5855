"""
Reminder lifecycle tracker — delivery logging, confirmations and the
derived reminder status shown to volunteers.

``derive_status`` is the single place that decides what a reminder's status
is.  It is pure: it only looks at the reminder, its delivery logs and the
patient's confirmations, so every storage backend and every caller gets the
same answer.

Precedence, most specific first:

1. a confirmation tied to the reminder's latest delivery (by log id or
   gateway message id), or to the reminder itself when it was made after
   that delivery
2. a confirmation tied only to the patient, made after the latest delivery
3. a latest delivery that went out (SENT or DELIVERED) -> ``pending``
4. otherwise -> ``scheduled``
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable

from prima.clock import Clock, as_utc, utcnow
from prima.errors import NotFoundError, ValidationError
from prima.models import (
    ConfirmationSource,
    ConfirmationStatus,
    DeliveryAction,
    DeliveryLog,
    ManualConfirmation,
    Reminder,
    ReminderStatus,
)
from prima.repositories.base import ReminderRepository

logger = logging.getLogger(__name__)

DELIVERY_ACTIONS = frozenset({DeliveryAction.SENT, DeliveryAction.DELIVERED, DeliveryAction.FAILED})
OUTBOUND_ACTIONS = frozenset({DeliveryAction.SENT, DeliveryAction.DELIVERED})

_GATEWAY_STATUS_MAP = {
    "sent": DeliveryAction.SENT,
    "queued": DeliveryAction.SENT,
    "pending": DeliveryAction.SENT,
    "delivered": DeliveryAction.DELIVERED,
    "read": DeliveryAction.DELIVERED,
    "opened": DeliveryAction.DELIVERED,
    "received": DeliveryAction.DELIVERED,
    "failed": DeliveryAction.FAILED,
    "error": DeliveryAction.FAILED,
    "undelivered": DeliveryAction.FAILED,
    "rejected": DeliveryAction.FAILED,
}

_REMINDER_STATUS_FOR = {
    DeliveryAction.SENT: ReminderStatus.SENT,
    DeliveryAction.DELIVERED: ReminderStatus.DELIVERED,
    DeliveryAction.FAILED: ReminderStatus.FAILED,
}


def map_gateway_status(raw: str | None) -> DeliveryAction | None:
    """Map a provider delivery status string; unknown values return ``None``."""
    if not raw:
        return None
    return _GATEWAY_STATUS_MAP.get(str(raw).strip().lower())


# ---------------------------------------------------------------------------
# Derived status
# ---------------------------------------------------------------------------

class DerivedState(str, enum.Enum):
    SCHEDULED = "scheduled"
    PENDING = "pending"
    COMPLETED_TAKEN = "completed_taken"
    COMPLETED_NOT_TAKEN = "completed_not_taken"


@dataclass(frozen=True)
class DerivedStatus:
    status: DerivedState
    as_of: datetime | date | None
    id_suffix: str
    confidence: str | None = None
    delivery_log_id: uuid.UUID | None = None
    confirmation_id: uuid.UUID | None = None


def _completed(confirmation: ManualConfirmation) -> DerivedState:
    return DerivedState.COMPLETED_TAKEN if confirmation.taken else DerivedState.COMPLETED_NOT_TAKEN


def _same_delivery(log: DeliveryLog | None, latest: DeliveryLog) -> bool:
    if log is None:
        return False
    if log.id == latest.id:
        return True
    return bool(log.gateway_message_id) and log.gateway_message_id == latest.gateway_message_id


def derive_status(
    reminder: Reminder,
    logs: Iterable[DeliveryLog],
    confirmations: Iterable[ManualConfirmation],
) -> DerivedStatus:
    """Compute the canonical status of *reminder*.

    *logs* and *confirmations* may be given in any order and may contain rows
    for other reminders of the same patient; they are filtered and sorted
    newest-first here.
    """
    reminder_logs = sorted(
        (log for log in logs if log.reminder_id == reminder.id),
        key=lambda log: as_utc(log.created_at),
        reverse=True,
    )
    logs_by_id = {log.id: log for log in reminder_logs}
    deliveries = [log for log in reminder_logs if log.action in DELIVERY_ACTIONS]
    latest = deliveries[0] if deliveries else None

    patient_confirmations = sorted(
        (c for c in confirmations if c.patient_id == reminder.patient_id),
        key=lambda c: as_utc(c.confirmed_at),
        reverse=True,
    )

    def after_latest(confirmation: ManualConfirmation) -> bool:
        return latest is None or as_utc(confirmation.confirmed_at) >= as_utc(latest.created_at)

    # 1. tied to the latest delivery, or to this reminder
    for confirmation in patient_confirmations:
        if confirmation.delivery_log_id is not None:
            if latest is not None and _same_delivery(logs_by_id.get(confirmation.delivery_log_id), latest):
                return DerivedStatus(
                    status=_completed(confirmation),
                    as_of=confirmation.confirmed_at,
                    id_suffix="log-confirmation",
                    confidence="high",
                    delivery_log_id=latest.id,
                    confirmation_id=confirmation.id,
                )
        elif confirmation.reminder_id == reminder.id and after_latest(confirmation):
            return DerivedStatus(
                status=_completed(confirmation),
                as_of=confirmation.confirmed_at,
                id_suffix="log-confirmation",
                confidence="high",
                delivery_log_id=latest.id if latest else None,
                confirmation_id=confirmation.id,
            )

    if latest is None:
        return DerivedStatus(status=DerivedState.SCHEDULED, as_of=reminder.start_date, id_suffix="schedule")

    # 2. tied only to the patient
    for confirmation in patient_confirmations:
        if confirmation.reminder_id is None and confirmation.delivery_log_id is None and after_latest(confirmation):
            return DerivedStatus(
                status=_completed(confirmation),
                as_of=confirmation.confirmed_at,
                id_suffix="patient-confirmation",
                confidence="low",
                delivery_log_id=latest.id,
                confirmation_id=confirmation.id,
            )

    # 3. delivered but unconfirmed
    if latest.action in OUTBOUND_ACTIONS:
        return DerivedStatus(
            status=DerivedState.PENDING,
            as_of=latest.created_at,
            id_suffix="delivery",
            delivery_log_id=latest.id,
        )

    # 4. bare schedule (last attempt failed)
    return DerivedStatus(
        status=DerivedState.SCHEDULED,
        as_of=reminder.start_date,
        id_suffix="schedule",
        delivery_log_id=latest.id,
    )


def latest_delivery(logs: Iterable[DeliveryLog]) -> DeliveryLog | None:
    deliveries = [log for log in logs if log.action in DELIVERY_ACTIONS]
    if not deliveries:
        return None
    return max(deliveries, key=lambda log: as_utc(log.created_at))


# ---------------------------------------------------------------------------
# Tracker service
# ---------------------------------------------------------------------------

class ReminderTracker:
    """Owns every write to reminders, delivery logs and confirmations."""

    def __init__(self, reminders: ReminderRepository, *, clock: Clock = utcnow):
        self._reminders = reminders
        self._clock = clock

    async def get_reminder(self, reminder_id: uuid.UUID) -> Reminder:
        reminder = await self._reminders.get(reminder_id)
        if reminder is None:
            raise NotFoundError(f"Reminder {reminder_id} not found")
        return reminder

    async def record_delivery(
        self,
        reminder_id: uuid.UUID,
        outcome: DeliveryAction,
        gateway_response: dict[str, Any] | None = None,
        gateway_message_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> DeliveryLog | None:
        """Append a delivery log and move the reminder's top-level status.

        Returns ``None`` when a log with the same gateway message id and
        outcome already exists; the reminder is left untouched in that case.
        """
        if outcome not in DELIVERY_ACTIONS:
            raise ValidationError(f"{outcome.value} is not a delivery outcome")

        reminder = await self.get_reminder(reminder_id)

        if gateway_message_id:
            existing = await self._reminders.find_log(gateway_message_id, outcome)
            if existing is not None:
                logger.info(
                    "Duplicate %s for reminder %s (gateway id %s) ignored",
                    outcome.value, reminder_id, gateway_message_id,
                )
                return None

        now = self._clock()
        fields: dict[str, Any] = {}
        same_message = bool(gateway_message_id) and gateway_message_id == reminder.gateway_message_id

        if outcome == DeliveryAction.SENT:
            if same_message and reminder.status == ReminderStatus.DELIVERED:
                pass  # late "sent" callback after "delivered"
            else:
                fields["status"] = ReminderStatus.SENT
            if not same_message:
                # a new send starts a new confirmation cycle
                fields.update(
                    sent_at=now,
                    gateway_message_id=gateway_message_id,
                    confirmation_status=ConfirmationStatus.PENDING,
                    confirmation_response=None,
                    confirmation_response_at=None,
                )
        else:
            fields["status"] = _REMINDER_STATUS_FOR[outcome]

        log = DeliveryLog(
            id=uuid.uuid4(),
            reminder_id=reminder.id,
            patient_id=reminder.patient_id,
            action=outcome,
            gateway_message_id=gateway_message_id,
            gateway_response=gateway_response or {},
            meta=metadata or {},
            created_at=now,
        )
        saved = await self._reminders.append_log(log, **fields)
        if saved is not None:
            logger.info("Reminder %s delivery recorded: %s", reminder_id, outcome.value)
        return saved

    async def record_delivery_by_gateway_id(
        self,
        gateway_message_id: str,
        outcome: DeliveryAction,
        gateway_response: dict[str, Any] | None = None,
    ) -> DeliveryLog | None:
        """Status-callback entry point; messages that are not reminders are ignored."""
        reminder = await self._reminders.find_by_gateway_message_id(gateway_message_id)
        if reminder is None:
            logger.debug("No reminder for gateway message %s", gateway_message_id)
            return None
        return await self.record_delivery(
            reminder.id,
            outcome,
            gateway_response=gateway_response,
            gateway_message_id=gateway_message_id,
        )

    async def record_confirmation(
        self,
        patient_id: uuid.UUID,
        reminder_id: uuid.UUID | None,
        taken: bool,
        notes: str | None = None,
        *,
        volunteer_id: uuid.UUID | None = None,
        source: ConfirmationSource = ConfirmationSource.MANUAL_ENTRY,
    ) -> ManualConfirmation:
        """Append an immutable confirmation.

        Raises ``ValidationError`` if *reminder_id* does not belong to
        *patient_id*, or if a patient reply targets a reminder that was
        never delivered.
        """
        now = self._clock()
        confirmation = ManualConfirmation(
            id=uuid.uuid4(),
            patient_id=patient_id,
            volunteer_id=volunteer_id,
            reminder_id=reminder_id,
            taken=taken,
            notes=notes,
            source=source,
            confirmed_at=now,
        )

        if reminder_id is None:
            saved = await self._reminders.append_confirmation(confirmation, None)
            logger.info("Patient-level confirmation recorded for %s (taken=%s)", patient_id, taken)
            return saved

        reminder = await self._reminders.get(reminder_id)
        if reminder is None or reminder.patient_id != patient_id:
            raise ValidationError(f"Reminder {reminder_id} does not belong to patient {patient_id}")

        latest = latest_delivery(await self._reminders.list_logs(reminder_id))
        if latest is None and source == ConfirmationSource.PATIENT_TEXT:
            raise ValidationError(f"Reminder {reminder_id} has no delivery to confirm")
        confirmation.delivery_log_id = latest.id if latest else None

        log = DeliveryLog(
            id=uuid.uuid4(),
            reminder_id=reminder.id,
            patient_id=patient_id,
            action=DeliveryAction.CONFIRMED if taken else DeliveryAction.MISSED,
            gateway_message_id=None,
            gateway_response={},
            meta={"confirmation_id": str(confirmation.id), "source": source.value},
            created_at=now,
        )
        saved = await self._reminders.append_confirmation(
            confirmation,
            log,
            confirmation_status=ConfirmationStatus.CONFIRMED if taken else ConfirmationStatus.MISSED,
            confirmation_response=notes,
            confirmation_response_at=now,
        )
        logger.info("Reminder %s confirmed by %s (taken=%s)", reminder_id, source.value, taken)
        return saved

    async def list_active_reminders(self) -> list[Reminder]:
        return await self._reminders.list_active()

    async def deactivate_patient_reminders(self, patient_id: uuid.UUID) -> int:
        return await self._reminders.deactivate_for_patient(patient_id)

    async def get_status(self, reminder_id: uuid.UUID) -> DerivedStatus:
        reminder = await self.get_reminder(reminder_id)
        logs = await self._reminders.list_logs(reminder_id)
        confirmations = await self._reminders.list_confirmations(reminder.patient_id)
        return derive_status(reminder, logs, confirmations)

    async def list_patient_statuses(self, patient_id: uuid.UUID) -> list[tuple[Reminder, DerivedStatus]]:
        reminders = await self._reminders.list_for_patient(patient_id)
        confirmations = await self._reminders.list_confirmations(patient_id)
        results = []
        for reminder in reminders:
            logs = await self._reminders.list_logs(reminder.id)
            results.append((reminder, derive_status(reminder, logs, confirmations)))
        return results
