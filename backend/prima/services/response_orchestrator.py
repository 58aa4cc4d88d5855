"""
Response orchestrator — processes one inbound WhatsApp reply end to end.

Per-message states::

    RECEIVED -> VALIDATED -> CONTEXT_RESOLVED -> CLASSIFIED -> APPLIED
                                                            -> CLARIFIED
                                                            -> ESCALATED

plus the terminal outcomes DUPLICATE, DROPPED and FAILED.

``handle`` never raises: a malformed or failing message is logged and
turned into an ``OrchestratorResult`` so the webhook can acknowledge it and
move on.  State changes are committed before the acknowledgement is sent;
a failed send does not undo them.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from prima.clock import Clock, utcnow
from prima.errors import DuplicateMessageError, UnknownSenderError, ValidationError
from prima.models import (
    ConfirmationSource,
    ContextKind,
    ConversationContext,
    ExpectedShape,
    Patient,
    VerificationStatus,
)
from prima.repositories.base import PatientRepository
from prima.services import messages
from prima.services.conversation_context import ConversationContextManager
from prima.services.delivery import DeliveryService, SendResult
from prima.services.idempotency import IdempotencyStore, inbound_message_key
from prima.services.inbound import InboundMessage, normalize_incoming
from prima.services.intent_classifier import Classification, Intent, classify, normalize, requires_human_intervention
from prima.services.patient_locks import PatientLocks
from prima.services.phone import mask_phone, phone_alternatives
from prima.services.reminder_tracker import ReminderTracker

logger = logging.getLogger(__name__)

EscalationSink = Callable[[str, dict[str, Any]], Awaitable[None]]

EMERGENCY_EVENT = "emergency_escalation"
HUMAN_INTERVENTION_EVENT = "human_intervention"


class MessageState(str, enum.Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    CONTEXT_RESOLVED = "context_resolved"
    CLASSIFIED = "classified"
    APPLIED = "applied"
    CLARIFIED = "clarified"
    ESCALATED = "escalated"
    DUPLICATE = "duplicate"
    DROPPED = "dropped"
    FAILED = "failed"


@dataclass
class OrchestratorResult:
    state: MessageState
    action: str
    patient_id: uuid.UUID | None = None
    intent: Intent | None = None
    confidence: float | None = None
    attempt: int | None = None
    idempotency_key: str | None = None
    reply: SendResult | None = None
    error: str | None = None
    trail: list[MessageState] = field(default_factory=list)

    @property
    def reply_sent(self) -> bool:
        return bool(self.reply and self.reply.success)

    def summary(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "action": self.action,
            "patient_id": str(self.patient_id) if self.patient_id else None,
            "intent": self.intent.value if self.intent else None,
            "confidence": self.confidence,
            "attempt": self.attempt,
            "reply_sent": self.reply_sent,
            "error": self.error,
        }


async def _log_only_sink(event: str, payload: dict[str, Any]) -> None:
    logger.warning("Escalation %s for patient %s (no operator channel configured)", event, payload.get("patient_id"))


class ResponseOrchestrator:

    def __init__(
        self,
        *,
        patients: PatientRepository,
        tracker: ReminderTracker,
        contexts: ConversationContextManager,
        delivery: DeliveryService,
        idempotency: IdempotencyStore,
        locks: PatientLocks,
        escalate: EscalationSink | None = None,
        clock: Clock = utcnow,
        bucket_seconds: int = 300,
        timezone: str = "Asia/Jakarta",
    ):
        self._patients = patients
        self._tracker = tracker
        self._contexts = contexts
        self._delivery = delivery
        self._idempotency = idempotency
        self._locks = locks
        self._escalate = escalate or _log_only_sink
        self._clock = clock
        self._bucket_seconds = bucket_seconds
        self._timezone = timezone

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle(self, payload: dict[str, Any] | InboundMessage) -> OrchestratorResult:
        trail = [MessageState.RECEIVED]

        try:
            message = payload if isinstance(payload, InboundMessage) else normalize_incoming(payload)
        except ValidationError as exc:
            logger.warning("Dropping malformed inbound message: %s", exc)
            return OrchestratorResult(MessageState.DROPPED, "invalid_payload", error=str(exc), trail=trail)

        key = inbound_message_key(
            message.sender,
            normalize(message.text),
            message.timestamp or self._clock(),
            message.provider_message_id,
            bucket_seconds=self._bucket_seconds,
        )

        try:
            await self._claim(key)
        except DuplicateMessageError:
            logger.info("Duplicate inbound message from %s ignored (%s)", mask_phone(message.sender), key)
            return OrchestratorResult(MessageState.DUPLICATE, "duplicate", idempotency_key=key, trail=trail)
        trail.append(MessageState.VALIDATED)

        try:
            result = await self._process(message, trail)
        except UnknownSenderError as exc:
            logger.info("Message from unknown sender %s dropped", mask_phone(message.sender))
            result = OrchestratorResult(MessageState.DROPPED, "unknown_sender", error=str(exc), trail=trail)
        except Exception as exc:
            logger.exception("Failed to process message from %s", mask_phone(message.sender))
            await self._idempotency.release(key)
            result = OrchestratorResult(MessageState.FAILED, "error", error=str(exc), trail=trail)

        result.idempotency_key = key
        if result.state not in result.trail:
            result.trail.append(result.state)
        return result

    async def _claim(self, key: str) -> None:
        if not await self._idempotency.claim(key):
            raise DuplicateMessageError(key)

    async def _process(self, message: InboundMessage, trail: list[MessageState]) -> OrchestratorResult:
        patient = await self._patients.find_by_phone(phone_alternatives(message.sender))
        if patient is None:
            raise UnknownSenderError(f"No patient for {mask_phone(message.sender)}")

        async with self._locks.hold(patient.id):
            context = await self._contexts.load_active_context(patient.id)
            trail.append(MessageState.CONTEXT_RESOLVED)

            shape = context.expected_shape if context is not None else ExpectedShape.FREE_TEXT
            classification = classify(message.text, shape)
            trail.append(MessageState.CLASSIFIED)
            logger.info(
                "Patient %s reply classified as %s (%.2f) in context %s",
                patient.id, classification.intent.value, classification.confidence,
                context.kind.value if context else "none",
            )

            if classification.intent == Intent.EMERGENCY:
                return await self._escalate_emergency(patient, message, classification, context, trail)

            if context is None or context.kind == ContextKind.GENERAL_INQUIRY:
                return await self._handle_general(patient, message, classification, trail)

            if context.kind == ContextKind.VERIFICATION:
                result = await self._handle_verification(patient, classification, trail)
            else:
                result = await self._handle_confirmation(patient, message, classification, context, trail)

            if result is not None:
                return result
            return await self._clarify(patient, classification, context, trail)

    def _result(self, state: MessageState, action: str, patient: Patient, classification: Classification,
                trail: list[MessageState], **kwargs: Any) -> OrchestratorResult:
        return OrchestratorResult(
            state=state,
            action=action,
            patient_id=patient.id,
            intent=classification.intent,
            confidence=classification.confidence,
            trail=trail,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def _handle_verification(
        self, patient: Patient, classification: Classification, trail: list[MessageState]
    ) -> OrchestratorResult | None:
        if classification.intent == Intent.ACCEPT:
            status, action, ack = VerificationStatus.VERIFIED, "verified", messages.verified_ack(patient.name)
        elif classification.intent == Intent.DECLINE:
            status, action, ack = VerificationStatus.DECLINED, "declined", messages.declined_ack(patient.name)
        else:
            return None

        await self._patients.update(patient.id, verification_status=status, verification_response_at=self._clock())
        await self._contexts.clear_context(patient.id)
        reply = await self._delivery.send(patient.phone, ack)
        logger.info("Patient %s verification -> %s", patient.id, status.value)
        return self._result(MessageState.APPLIED, action, patient, classification, trail, reply=reply)

    async def _handle_confirmation(
        self,
        patient: Patient,
        message: InboundMessage,
        classification: Classification,
        context: ConversationContext,
        trail: list[MessageState],
    ) -> OrchestratorResult | None:
        if classification.intent not in (Intent.CONFIRM_TAKEN, Intent.CONFIRM_MISSED):
            return None

        try:
            reminder_id = uuid.UUID(context.related_entity_id)
        except (TypeError, ValueError):
            logger.warning("Confirmation context %s has no valid reminder; clearing it", context.id)
            await self._contexts.clear_context(patient.id)
            return await self._handle_general(patient, message, classification, trail)

        taken = classification.intent == Intent.CONFIRM_TAKEN
        try:
            confirmation = await self._tracker.record_confirmation(
                patient.id,
                reminder_id,
                taken,
                notes=message.text,
                source=ConfirmationSource.PATIENT_TEXT,
            )
        except ValidationError as exc:
            logger.warning("Stale confirmation context %s for patient %s: %s", context.id, patient.id, exc)
            await self._contexts.clear_context(patient.id)
            return self._result(MessageState.DROPPED, "stale_context", patient, classification, trail, error=str(exc))

        await self._contexts.clear_context(patient.id)
        if taken:
            ack = messages.taken_ack(patient.name, confirmation.confirmed_at, self._timezone)
        else:
            ack = messages.missed_ack(patient.name)
        reply = await self._delivery.send(patient.phone, ack)
        return self._result(
            MessageState.APPLIED,
            "confirmed_taken" if taken else "confirmed_missed",
            patient, classification, trail, reply=reply,
        )

    async def _clarify(
        self,
        patient: Patient,
        classification: Classification,
        context: ConversationContext,
        trail: list[MessageState],
    ) -> OrchestratorResult:
        attempt = await self._contexts.increment_attempt(context.id)
        reply = await self._delivery.send(patient.phone, messages.clarification(context.kind, attempt))
        logger.info(
            "Clarification level %d sent to patient %s (attempt %d)",
            messages.clarification_level(attempt), patient.id, attempt,
        )
        return self._result(
            MessageState.CLARIFIED, "clarification_sent", patient, classification, trail,
            attempt=attempt, reply=reply,
        )

    async def _escalate_emergency(
        self,
        patient: Patient,
        message: InboundMessage,
        classification: Classification,
        context: ConversationContext | None,
        trail: list[MessageState],
    ) -> OrchestratorResult:
        await self._notify(EMERGENCY_EVENT, self._escalation_payload(patient, message, classification, context))
        reply = await self._delivery.send(patient.phone, messages.emergency_ack(patient.name))
        logger.warning("Emergency escalated for patient %s", patient.id)
        return self._result(MessageState.ESCALATED, "emergency_escalated", patient, classification, trail, reply=reply)

    async def _handle_general(
        self,
        patient: Patient,
        message: InboundMessage,
        classification: Classification,
        trail: list[MessageState],
    ) -> OrchestratorResult:
        if classification.intent == Intent.UNSUBSCRIBE:
            now = self._clock()
            await self._patients.update(
                patient.id,
                verification_status=VerificationStatus.UNSUBSCRIBED,
                unsubscribed_at=now,
                is_active=False,
            )
            deactivated = await self._tracker.deactivate_patient_reminders(patient.id)
            await self._contexts.clear_context(patient.id)
            reply = await self._delivery.send(patient.phone, messages.unsubscribe_ack(patient.name))
            logger.info("Patient %s unsubscribed (%d reminders deactivated)", patient.id, deactivated)
            return self._result(MessageState.APPLIED, "unsubscribed", patient, classification, trail, reply=reply)

        if requires_human_intervention(classification):
            await self._notify(
                HUMAN_INTERVENTION_EVENT, self._escalation_payload(patient, message, classification, None)
            )
            reply = await self._delivery.send(patient.phone, messages.volunteer_followup(patient.name))
            return self._result(MessageState.ESCALATED, "human_intervention", patient, classification, trail, reply=reply)

        reply = await self._delivery.send(patient.phone, messages.general_help(patient.name))
        return self._result(MessageState.CLARIFIED, "general_reply", patient, classification, trail, reply=reply)

    # ------------------------------------------------------------------
    # Operator channel
    # ------------------------------------------------------------------

    def _escalation_payload(
        self,
        patient: Patient,
        message: InboundMessage,
        classification: Classification,
        context: ConversationContext | None,
    ) -> dict[str, Any]:
        return {
            "patient_id": str(patient.id),
            "patient_name": patient.name,
            "phone": patient.phone,
            "assigned_volunteer_id": str(patient.assigned_volunteer_id) if patient.assigned_volunteer_id else None,
            "message": message.text,
            "intent": classification.intent.value,
            "confidence": classification.confidence,
            "sentiment": classification.sentiment.value,
            "entities": [
                {"type": e.type, "value": e.value, "confidence": e.confidence} for e in classification.entities
            ],
            "context": context.kind.value if context else None,
            "received_at": (message.timestamp or self._clock()).isoformat(),
        }

    async def _notify(self, event: str, payload: dict[str, Any]) -> None:
        try:
            await self._escalate(event, payload)
        except Exception:
            logger.exception("Escalation sink failed for %s (patient %s)", event, payload.get("patient_id"))
