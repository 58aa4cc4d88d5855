"""
Storage-agnostic repository interfaces.

Services depend only on these protocols.  ``prima.repositories.sql`` backs
them with PostgreSQL; ``prima.repositories.memory`` keeps everything in
process for tests and local runs.  Each method is one unit of work: methods
that touch several rows (``append_log``, ``append_confirmation``,
``replace``) are atomic.

Entities are the ORM classes from ``prima.models``; callers always supply
ids and timestamps so both backends store identical rows.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Protocol

from prima.models import (
    ConversationContext,
    DeliveryAction,
    DeliveryLog,
    ManualConfirmation,
    Patient,
    Reminder,
)


class PatientRepository(Protocol):
    async def add(self, patient: Patient) -> Patient: ...

    async def get(self, patient_id: uuid.UUID) -> Patient | None: ...

    async def find_by_phone(self, phones: list[str]) -> Patient | None:
        """Return the first active, non-deleted patient matching any of *phones*."""
        ...

    async def update(self, patient_id: uuid.UUID, **fields: Any) -> Patient | None: ...


class ReminderRepository(Protocol):
    async def add(self, reminder: Reminder) -> Reminder: ...

    async def get(self, reminder_id: uuid.UUID) -> Reminder | None: ...

    async def list_for_patient(self, patient_id: uuid.UUID) -> list[Reminder]: ...

    async def list_active(self) -> list[Reminder]: ...

    async def find_by_gateway_message_id(self, gateway_message_id: str) -> Reminder | None: ...

    async def update(self, reminder_id: uuid.UUID, **fields: Any) -> Reminder | None: ...

    async def deactivate_for_patient(self, patient_id: uuid.UUID) -> int: ...

    async def list_logs(self, reminder_id: uuid.UUID) -> list[DeliveryLog]: ...

    async def find_log(self, gateway_message_id: str, action: DeliveryAction) -> DeliveryLog | None: ...

    async def append_log(self, log: DeliveryLog, **reminder_fields: Any) -> DeliveryLog | None:
        """Insert *log* and apply *reminder_fields* to its reminder.

        Returns ``None`` when storage already holds a log with the same
        gateway message id and action.
        """
        ...

    async def list_confirmations(self, patient_id: uuid.UUID) -> list[ManualConfirmation]: ...

    async def append_confirmation(
        self,
        confirmation: ManualConfirmation,
        log: DeliveryLog | None,
        **reminder_fields: Any,
    ) -> ManualConfirmation: ...


class ContextRepository(Protocol):
    async def get(self, context_id: uuid.UUID) -> ConversationContext | None: ...

    async def latest_for_patient(self, patient_id: uuid.UUID) -> ConversationContext | None:
        """Most recently created context that has not been soft-deleted."""
        ...

    async def replace(self, context: ConversationContext, now: datetime) -> ConversationContext:
        """Soft-delete every live context of the patient, then insert *context*."""
        ...

    async def soft_delete_for_patient(self, patient_id: uuid.UUID, now: datetime) -> int: ...

    async def increment_attempt(self, context_id: uuid.UUID) -> int | None: ...

    async def purge(self, before: datetime) -> int:
        """Hard-delete rows soft-deleted or expired before *before*."""
        ...
