"""
Reminder API routes (volunteer dashboard).

Endpoints:
    GET  /patients/{patient_id}/reminders                         — Reminders with their derived status
    POST /patients/{patient_id}/reminders/{reminder_id}/confirm   — Manual confirmation by a volunteer
    POST /patients/{patient_id}/reminders/{reminder_id}/send      — Send a reminder now
    POST /patients/{patient_id}/verification/send                 — (Re)send the WhatsApp verification prompt
"""

import logging
from datetime import date, datetime
from typing import Optional, Union
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict

from prima.api.deps import get_engine
from prima.errors import NotFoundError, ValidationError
from prima.models import ConfirmationStatus, ReminderStatus
from prima.services.delivery import SendResult
from prima.services.engine import ReminderEngine
from prima.services.reminder_tracker import DerivedState

router = APIRouter()
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class ReminderStatusResponse(BaseModel):
    id: UUID
    patient_id: UUID
    scheduled_time: str
    start_date: date
    end_date: Optional[date] = None
    message: str
    status: ReminderStatus
    confirmation_status: ConfirmationStatus
    sent_at: Optional[datetime] = None
    is_active: Optional[bool] = None
    derived_status: DerivedState
    derived_as_of: Optional[Union[datetime, date]] = None
    derived_id: str
    derived_confidence: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ManualConfirmationRequest(BaseModel):
    taken: bool
    notes: Optional[str] = None
    volunteer_id: Optional[UUID] = None


class ManualConfirmationResponse(BaseModel):
    id: UUID
    patient_id: UUID
    reminder_id: Optional[UUID] = None
    delivery_log_id: Optional[UUID] = None
    taken: bool
    notes: Optional[str] = None
    confirmed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SendResponse(BaseModel):
    success: bool
    provider_message_id: Optional[str] = None
    attempts: int
    error: Optional[str] = None

    @classmethod
    def from_result(cls, result: SendResult) -> "SendResponse":
        return cls(
            success=result.success,
            provider_message_id=result.provider_message_id,
            attempts=result.attempts,
            error=result.error,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _require_patient(engine: ReminderEngine, patient_id: UUID):
    patient = await engine.patients.get(patient_id)
    if patient is None or patient.deleted_at is not None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")
    return patient


async def _require_reminder(engine: ReminderEngine, patient_id: UUID, reminder_id: UUID):
    try:
        reminder = await engine.tracker.get_reminder(reminder_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Reminder not found")
    if reminder.patient_id != patient_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Reminder not found")
    return reminder


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/patients/{patient_id}/reminders", response_model=list[ReminderStatusResponse])
async def list_patient_reminders(patient_id: UUID, engine: ReminderEngine = Depends(get_engine)):
    await _require_patient(engine, patient_id)
    rows = await engine.tracker.list_patient_statuses(patient_id)
    return [
        ReminderStatusResponse(
            id=reminder.id,
            patient_id=reminder.patient_id,
            scheduled_time=reminder.scheduled_time,
            start_date=reminder.start_date,
            end_date=reminder.end_date,
            message=reminder.message,
            status=reminder.status,
            confirmation_status=reminder.confirmation_status,
            sent_at=reminder.sent_at,
            is_active=reminder.is_active,
            derived_status=derived.status,
            derived_as_of=derived.as_of,
            derived_id=f"{reminder.id}-{derived.id_suffix}",
            derived_confidence=derived.confidence,
        )
        for reminder, derived in rows
    ]


@router.post(
    "/patients/{patient_id}/reminders/{reminder_id}/confirm",
    response_model=ManualConfirmationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def confirm_reminder(
    patient_id: UUID,
    reminder_id: UUID,
    payload: ManualConfirmationRequest,
    engine: ReminderEngine = Depends(get_engine),
):
    """Record a volunteer's confirmation (e.g. after a phone call)."""
    await _require_patient(engine, patient_id)
    await _require_reminder(engine, patient_id, reminder_id)
    try:
        confirmation = await engine.tracker.record_confirmation(
            patient_id,
            reminder_id,
            payload.taken,
            payload.notes,
            volunteer_id=payload.volunteer_id,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return ManualConfirmationResponse.model_validate(confirmation)


@router.post("/patients/{patient_id}/reminders/{reminder_id}/send", response_model=SendResponse)
async def send_reminder_now(
    patient_id: UUID,
    reminder_id: UUID,
    engine: ReminderEngine = Depends(get_engine),
):
    await _require_patient(engine, patient_id)
    await _require_reminder(engine, patient_id, reminder_id)
    try:
        result = await engine.sender.send_reminder(reminder_id)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return SendResponse.from_result(result)


@router.post("/patients/{patient_id}/verification/send", response_model=SendResponse)
async def send_verification(patient_id: UUID, engine: ReminderEngine = Depends(get_engine)):
    await _require_patient(engine, patient_id)
    try:
        result = await engine.sender.send_verification(patient_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return SendResponse.from_result(result)
