import enum
import uuid

from sqlalchemy import Column, String, Enum, DateTime, Boolean
from sqlalchemy.dialects.postgresql import UUID

from prima.clock import utcnow
from prima.db.postgres import Base


class VerificationStatus(str, enum.Enum):
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    DECLINED = "declined"
    UNSUBSCRIBED = "unsubscribed"


class Patient(Base):
    """Only the patient fields the reminder engine reads or writes."""

    __tablename__ = "patients"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phone = Column(String, unique=True, nullable=False, index=True)  # canonical 62xxxxxxxxx
    name = Column(String, nullable=False)

    verification_status = Column(
        Enum(VerificationStatus), nullable=False, default=VerificationStatus.PENDING_VERIFICATION
    )
    verification_response_at = Column(DateTime(timezone=True), nullable=True)
    unsubscribed_at = Column(DateTime(timezone=True), nullable=True)

    assigned_volunteer_id = Column(UUID(as_uuid=True), nullable=True)
    is_active = Column(Boolean, default=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
