from prima.models.patient import Patient, VerificationStatus
from prima.models.reminder import (
    Reminder,
    ReminderStatus,
    ConfirmationStatus,
    DeliveryLog,
    DeliveryAction,
    ManualConfirmation,
    ConfirmationSource,
)
from prima.models.conversation import ConversationContext, ContextKind, ExpectedShape

__all__ = [
    "Patient",
    "VerificationStatus",
    "Reminder",
    "ReminderStatus",
    "ConfirmationStatus",
    "DeliveryLog",
    "DeliveryAction",
    "ManualConfirmation",
    "ConfirmationSource",
    "ConversationContext",
    "ContextKind",
    "ExpectedShape",
]
