"""
In-process repositories.

Used by the test-suite and by single-process local runs without
PostgreSQL.  They mirror the SQL behaviour that services rely on: soft-delete
filtering, newest-first ordering and the (gateway_message_id, action)
uniqueness of delivery logs.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Any

from prima.clock import as_utc
from prima.models import (
    ConversationContext,
    DeliveryAction,
    DeliveryLog,
    ManualConfirmation,
    Patient,
    Reminder,
)


class InMemoryPatientRepository:

    def __init__(self):
        self.patients: dict[uuid.UUID, Patient] = {}

    async def add(self, patient: Patient) -> Patient:
        self.patients[patient.id] = patient
        return patient

    async def get(self, patient_id: uuid.UUID) -> Patient | None:
        return self.patients.get(patient_id)

    async def find_by_phone(self, phones: list[str]) -> Patient | None:
        for patient in self.patients.values():
            if patient.phone in phones and patient.deleted_at is None and patient.is_active is not False:
                return patient
        return None

    async def update(self, patient_id: uuid.UUID, **fields: Any) -> Patient | None:
        patient = self.patients.get(patient_id)
        if patient is None:
            return None
        for key, value in fields.items():
            setattr(patient, key, value)
        return patient


class InMemoryReminderRepository:

    def __init__(self):
        self.reminders: dict[uuid.UUID, Reminder] = {}
        self.logs: list[DeliveryLog] = []
        self.confirmations: list[ManualConfirmation] = []
        self._write_lock = asyncio.Lock()

    async def add(self, reminder: Reminder) -> Reminder:
        self.reminders[reminder.id] = reminder
        return reminder

    async def get(self, reminder_id: uuid.UUID) -> Reminder | None:
        reminder = self.reminders.get(reminder_id)
        if reminder is None or reminder.deleted_at is not None:
            return None
        return reminder

    async def list_for_patient(self, patient_id: uuid.UUID) -> list[Reminder]:
        rows = [
            r for r in self.reminders.values()
            if r.patient_id == patient_id and r.deleted_at is None
        ]
        return sorted(rows, key=lambda r: r.scheduled_time)

    async def list_active(self) -> list[Reminder]:
        return [
            r for r in self.reminders.values()
            if r.is_active is not False and r.deleted_at is None
        ]

    async def find_by_gateway_message_id(self, gateway_message_id: str) -> Reminder | None:
        for reminder in self.reminders.values():
            if reminder.gateway_message_id == gateway_message_id and reminder.deleted_at is None:
                return reminder
        return None

    async def update(self, reminder_id: uuid.UUID, **fields: Any) -> Reminder | None:
        reminder = self.reminders.get(reminder_id)
        if reminder is None:
            return None
        for key, value in fields.items():
            setattr(reminder, key, value)
        return reminder

    async def deactivate_for_patient(self, patient_id: uuid.UUID) -> int:
        count = 0
        for reminder in self.reminders.values():
            if reminder.patient_id == patient_id and reminder.is_active is not False:
                reminder.is_active = False
                count += 1
        return count

    async def list_logs(self, reminder_id: uuid.UUID) -> list[DeliveryLog]:
        rows = [log for log in self.logs if log.reminder_id == reminder_id]
        return sorted(rows, key=lambda log: as_utc(log.created_at), reverse=True)

    async def find_log(self, gateway_message_id: str, action: DeliveryAction) -> DeliveryLog | None:
        for log in self.logs:
            if log.gateway_message_id == gateway_message_id and log.action == action:
                return log
        return None

    async def append_log(self, log: DeliveryLog, **reminder_fields: Any) -> DeliveryLog | None:
        async with self._write_lock:
            if log.gateway_message_id is not None:
                if await self.find_log(log.gateway_message_id, log.action) is not None:
                    return None
            self.logs.append(log)
            if reminder_fields:
                await self.update(log.reminder_id, **reminder_fields)
        return log

    async def list_confirmations(self, patient_id: uuid.UUID) -> list[ManualConfirmation]:
        rows = [c for c in self.confirmations if c.patient_id == patient_id]
        return sorted(rows, key=lambda c: as_utc(c.confirmed_at), reverse=True)

    async def append_confirmation(
        self,
        confirmation: ManualConfirmation,
        log: DeliveryLog | None,
        **reminder_fields: Any,
    ) -> ManualConfirmation:
        async with self._write_lock:
            self.confirmations.append(confirmation)
            if log is not None:
                self.logs.append(log)
            if reminder_fields and confirmation.reminder_id is not None:
                await self.update(confirmation.reminder_id, **reminder_fields)
        return confirmation


class InMemoryContextRepository:

    def __init__(self):
        self.contexts: dict[uuid.UUID, ConversationContext] = {}

    async def get(self, context_id: uuid.UUID) -> ConversationContext | None:
        return self.contexts.get(context_id)

    async def latest_for_patient(self, patient_id: uuid.UUID) -> ConversationContext | None:
        live = [
            c for c in self.contexts.values()
            if c.patient_id == patient_id and c.deleted_at is None
        ]
        if not live:
            return None
        return max(live, key=lambda c: as_utc(c.created_at))

    async def replace(self, context: ConversationContext, now: datetime) -> ConversationContext:
        await self.soft_delete_for_patient(context.patient_id, now)
        self.contexts[context.id] = context
        return context

    async def soft_delete_for_patient(self, patient_id: uuid.UUID, now: datetime) -> int:
        count = 0
        for context in self.contexts.values():
            if context.patient_id == patient_id and context.deleted_at is None:
                context.deleted_at = now
                count += 1
        return count

    async def increment_attempt(self, context_id: uuid.UUID) -> int | None:
        context = self.contexts.get(context_id)
        if context is None:
            return None
        context.attempt_count = (context.attempt_count or 0) + 1
        return context.attempt_count

    async def purge(self, before: datetime) -> int:
        stale = [
            c.id for c in self.contexts.values()
            if (c.deleted_at is not None and as_utc(c.deleted_at) < before)
            or as_utc(c.expires_at) < before
        ]
        for context_id in stale:
            del self.contexts[context_id]
        return len(stale)
