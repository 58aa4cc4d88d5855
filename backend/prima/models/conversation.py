import enum
import uuid

from sqlalchemy import Column, String, Enum, DateTime, Integer, ForeignKey
from sqlalchemy.dialects.postgresql import UUID

from prima.clock import utcnow
from prima.db.postgres import Base


class ContextKind(str, enum.Enum):
    VERIFICATION = "verification"
    REMINDER_CONFIRMATION = "reminder_confirmation"
    GENERAL_INQUIRY = "general_inquiry"


class ExpectedShape(str, enum.Enum):
    YES_NO = "yes_no"
    FREE_TEXT = "free_text"


class ConversationContext(Base):
    """Short-lived record of what kind of reply is expected from a patient.

    At most one row per patient is active (``deleted_at`` is null and
    ``expires_at`` is in the future).
    """

    __tablename__ = "conversation_contexts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.id"), nullable=False, index=True)
    kind = Column(Enum(ContextKind), nullable=False)
    expected_shape = Column(Enum(ExpectedShape), nullable=False, default=ExpectedShape.YES_NO)
    related_entity_id = Column(String, nullable=True)  # e.g. the reminder awaiting confirmation
    attempt_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
