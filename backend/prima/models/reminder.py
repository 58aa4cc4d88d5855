import enum
import uuid

from sqlalchemy import Column, String, Enum, DateTime, Boolean, Date, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB

from prima.clock import utcnow
from prima.db.postgres import Base


class ReminderStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class ConfirmationStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    MISSED = "missed"


class DeliveryAction(str, enum.Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CONFIRMED = "confirmed"
    MISSED = "missed"


class ConfirmationSource(str, enum.Enum):
    PATIENT_TEXT = "patient_text"
    MANUAL_ENTRY = "manual_entry"


class Reminder(Base):
    __tablename__ = "reminders"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.id"), nullable=False, index=True)
    scheduled_time = Column(String, nullable=False)  # "HH:MM" in REMINDER_TIMEZONE
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    message = Column(String, nullable=False)

    # Delivery lifecycle: PENDING -> SENT -> DELIVERED, terminal FAILED
    status = Column(Enum(ReminderStatus), nullable=False, default=ReminderStatus.PENDING)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    gateway_message_id = Column(String, nullable=True, index=True)

    # Confirmation sub-state
    confirmation_status = Column(Enum(ConfirmationStatus), nullable=False, default=ConfirmationStatus.PENDING)
    confirmation_response = Column(String, nullable=True)
    confirmation_response_at = Column(DateTime(timezone=True), nullable=True)

    is_active = Column(Boolean, default=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)  # soft delete only
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class DeliveryLog(Base):
    """Append-only; rows are never updated or deleted."""

    __tablename__ = "delivery_logs"
    __table_args__ = (
        UniqueConstraint("gateway_message_id", "action", name="uq_delivery_logs_gateway_action"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    reminder_id = Column(UUID(as_uuid=True), ForeignKey("reminders.id"), nullable=False, index=True)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.id"), nullable=False, index=True)
    action = Column(Enum(DeliveryAction), nullable=False)
    gateway_message_id = Column(String, nullable=True)
    gateway_response = Column(JSONB, default=dict)
    meta = Column("metadata", JSONB, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


class ManualConfirmation(Base):
    """Immutable once created."""

    __tablename__ = "manual_confirmations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.id"), nullable=False, index=True)
    volunteer_id = Column(UUID(as_uuid=True), nullable=True)  # null when created from a patient reply
    reminder_id = Column(UUID(as_uuid=True), ForeignKey("reminders.id"), nullable=True, index=True)
    delivery_log_id = Column(UUID(as_uuid=True), ForeignKey("delivery_logs.id"), nullable=True)
    taken = Column(Boolean, nullable=False)
    notes = Column(String, nullable=True)
    source = Column(Enum(ConfirmationSource), nullable=False, default=ConfirmationSource.MANUAL_ENTRY)
    confirmed_at = Column(DateTime(timezone=True), default=utcnow, index=True)
