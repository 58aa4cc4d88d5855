"""
Response Orchestrator Tests

End-to-end handling of inbound replies against the in-memory engine:
verification, reminder confirmation, unbounded clarification, emergency
escalation, unsubscribe, duplicates, unknown senders and acknowledgement
failures.
"""

import asyncio
import uuid

import pytest

from prima.errors import GatewayPermanentError
from prima.models import ConfirmationStatus, ContextKind, VerificationStatus
from prima.services import messages
from prima.services.intent_classifier import Intent
from prima.services.patient_locks import PatientLocks
from prima.services.reminder_tracker import DerivedState
from prima.services.response_orchestrator import (
    EMERGENCY_EVENT,
    HUMAN_INTERVENTION_EVENT,
    MessageState,
)

from conftest import FakeRedis, make_patient


def _payload(text, *, sender="081234567890", message_id=None):
    payload = {"sender": sender, "message": text}
    if message_id is not None:
        payload["id"] = message_id
    return payload


class TestVerification:
    """Scenario: patient answers the verification prompt"""

    async def test_accept_verifies_patient(self, engine, transport):
        patient = make_patient(verification_status=VerificationStatus.PENDING_VERIFICATION)
        engine.patients.patients[patient.id] = patient
        await engine.sender.send_verification(patient.id)

        result = await engine.orchestrator.handle(_payload("YA", message_id="m1"))

        assert result.state == MessageState.APPLIED
        assert result.action == "verified"
        assert patient.verification_status == VerificationStatus.VERIFIED
        assert patient.verification_response_at is not None
        assert await engine.contexts.load_active_context(patient.id) is None
        assert transport.last_body == messages.verified_ack(patient.name)
        assert result.trail == [
            MessageState.RECEIVED,
            MessageState.VALIDATED,
            MessageState.CONTEXT_RESOLVED,
            MessageState.CLASSIFIED,
            MessageState.APPLIED,
        ]

    async def test_decline(self, engine):
        patient = make_patient(verification_status=VerificationStatus.PENDING_VERIFICATION)
        engine.patients.patients[patient.id] = patient
        await engine.contexts.set_context(patient.id, ContextKind.VERIFICATION)

        result = await engine.orchestrator.handle(_payload("tidak", message_id="m1"))

        assert result.action == "declined"
        assert patient.verification_status == VerificationStatus.DECLINED

    async def test_ack_failure_keeps_state(self, engine, transport):
        """A failed acknowledgement send does not undo the verification"""
        patient = make_patient(verification_status=VerificationStatus.PENDING_VERIFICATION)
        engine.patients.patients[patient.id] = patient
        await engine.contexts.set_context(patient.id, ContextKind.VERIFICATION)
        transport.errors = [GatewayPermanentError("HTTP 400", status_code=400)]

        result = await engine.orchestrator.handle(_payload("ya", message_id="m1"))

        assert result.state == MessageState.APPLIED
        assert result.reply_sent is False
        assert patient.verification_status == VerificationStatus.VERIFIED


class TestReminderConfirmation:
    """Scenario: patient confirms a reminder that was just sent"""

    async def test_sudah_confirms_taken(self, engine, reminder, patient, transport):
        await engine.sender.send_reminder(reminder.id)

        result = await engine.orchestrator.handle(_payload("Sudah", message_id="m1"))

        assert result.action == "confirmed_taken"
        assert result.intent == Intent.CONFIRM_TAKEN
        assert reminder.confirmation_status == ConfirmationStatus.CONFIRMED
        assert reminder.confirmation_response == "Sudah"
        status = await engine.tracker.get_status(reminder.id)
        assert status.status == DerivedState.COMPLETED_TAKEN
        assert status.id_suffix == "log-confirmation"
        assert await engine.contexts.load_active_context(patient.id) is None
        assert "dikonfirmasi selesai pada 08.00" in transport.last_body

    async def test_belum_confirms_missed(self, engine, reminder):
        await engine.sender.send_reminder(reminder.id)

        result = await engine.orchestrator.handle(_payload("blm", message_id="m1"))

        assert result.action == "confirmed_missed"
        assert reminder.confirmation_status == ConfirmationStatus.MISSED
        assert (await engine.tracker.get_status(reminder.id)).status == DerivedState.COMPLETED_NOT_TAKEN

    async def test_stale_context_is_dropped(self, engine, reminder, patient):
        """Context points at a reminder that was never delivered"""
        await engine.contexts.set_context(
            patient.id, ContextKind.REMINDER_CONFIRMATION, related_entity_id=reminder.id
        )

        result = await engine.orchestrator.handle(_payload("sudah", message_id="m1"))

        assert result.state == MessageState.DROPPED
        assert result.action == "stale_context"
        assert engine.reminders.confirmations == []
        assert await engine.contexts.load_active_context(patient.id) is None


class TestClarification:
    """Scenario: patient keeps replying with something unexpected"""

    async def test_unbounded_clarification_loop(self, engine, patient, transport):
        await engine.contexts.set_context(patient.id, ContextKind.VERIFICATION)

        results = []
        for i in range(10):
            results.append(await engine.orchestrator.handle(_payload("terserah", message_id=f"m{i}")))

        assert [r.attempt for r in results] == list(range(1, 11))
        assert all(r.state == MessageState.CLARIFIED for r in results)
        assert transport.sent[0][1] == messages.clarification(ContextKind.VERIFICATION, 1)
        assert transport.sent[1][1] == messages.clarification(ContextKind.VERIFICATION, 2)
        assert transport.last_body == messages.clarification(ContextKind.VERIFICATION, 3)
        context = await engine.contexts.load_active_context(patient.id)
        assert context is not None and context.attempt_count == 10

    async def test_unmatched_reply_in_confirmation_context(self, engine, reminder, patient, transport):
        await engine.sender.send_reminder(reminder.id)

        result = await engine.orchestrator.handle(_payload("terserah", message_id="m1"))

        assert result.state == MessageState.CLARIFIED
        assert result.attempt == 1
        assert transport.last_body == messages.clarification(ContextKind.REMINDER_CONFIRMATION, 1)
        context = await engine.contexts.load_active_context(patient.id)
        assert context.kind == ContextKind.REMINDER_CONFIRMATION
        assert context.attempt_count == 1
        assert engine.reminders.confirmations == []

    async def test_unrelated_intent_in_confirmation_context_clarifies(self, engine, reminder, patient):
        await engine.sender.send_reminder(reminder.id)
        result = await engine.orchestrator.handle(_payload("ya", message_id="m1"))
        assert result.action == "clarification_sent"
        assert result.attempt == 1


class TestEscalation:

    async def test_emergency_overrides_context(self, engine, reminder, patient, escalations, transport):
        await engine.sender.send_reminder(reminder.id)

        result = await engine.orchestrator.handle(_payload("sesak nafas tolong", message_id="m1"))

        assert result.state == MessageState.ESCALATED
        assert result.action == "emergency_escalated"
        assert escalations[0][0] == EMERGENCY_EVENT
        assert escalations[0][1]["patient_id"] == str(patient.id)
        assert escalations[0][1]["context"] == ContextKind.REMINDER_CONFIRMATION.value
        assert transport.last_body == messages.emergency_ack(patient.name)
        # the pending confirmation is still awaited
        assert await engine.contexts.load_active_context(patient.id) is not None

    async def test_escalation_sink_failure_still_acknowledges(self, engine, patient, transport):
        async def broken(event, payload):
            raise RuntimeError("socket down")

        engine.orchestrator._escalate = broken
        result = await engine.orchestrator.handle(_payload("darurat", message_id="m1"))
        assert result.action == "emergency_escalated"
        assert result.reply_sent is True

    async def test_unmatched_free_text_goes_to_volunteer(self, engine, patient, escalations):
        result = await engine.orchestrator.handle(_payload("terserah", message_id="m1"))
        assert result.action == "human_intervention"
        assert result.intent == Intent.INQUIRY
        assert escalations[0][0] == HUMAN_INTERVENTION_EVENT

    async def test_general_reply_without_context(self, engine, patient, escalations, transport):
        result = await engine.orchestrator.handle(_payload("ya", message_id="m1"))
        assert result.action == "general_reply"
        assert escalations == []
        assert transport.last_body == messages.general_help(patient.name)


class TestUnsubscribe:

    async def test_unsubscribe_deactivates_everything(self, engine, patient, reminder):
        result = await engine.orchestrator.handle(_payload("berhenti", message_id="m1"))

        assert result.action == "unsubscribed"
        assert patient.verification_status == VerificationStatus.UNSUBSCRIBED
        assert patient.unsubscribed_at is not None
        assert patient.is_active is False
        assert reminder.is_active is False


class TestConcurrentReplies:
    """Two replies from the same patient arriving together"""

    async def test_simultaneous_replies_confirm_once(self, engine, reminder):
        await engine.sender.send_reminder(reminder.id)

        results = await asyncio.gather(
            engine.orchestrator.handle(_payload("sudah", message_id="m1")),
            engine.orchestrator.handle(_payload("sudah", message_id="m2")),
        )

        assert [r.action for r in results].count("confirmed_taken") == 1
        assert len(engine.reminders.confirmations) == 1

    async def test_redis_lock_outlives_slow_acknowledgement(self, engine, reminder, transport):
        """The shared lock is renewed while a slow ack send is in flight"""
        await engine.sender.send_reminder(reminder.id)
        redis = FakeRedis()
        engine.orchestrator._locks = PatientLocks(redis, timeout=0.2, blocking_timeout=2.0)
        transport.delay = 0.5

        async def late_reply():
            await asyncio.sleep(0.3)
            return await engine.orchestrator.handle(_payload("sudah", message_id="m2"))

        first, second = await asyncio.gather(
            engine.orchestrator.handle(_payload("sudah", message_id="m1")),
            late_reply(),
        )

        assert first.action == "confirmed_taken"
        assert second.action != "confirmed_taken"
        assert len(engine.reminders.confirmations) == 1
        assert redis.extensions >= 1
        assert redis.held == {}

    async def test_context_is_cleared_before_acknowledgement(self, engine, reminder, patient, transport):
        await engine.sender.send_reminder(reminder.id)
        seen = {}
        original_send = transport.send

        async def send(to, body):
            seen["context"] = await engine.contexts.load_active_context(patient.id)
            return await original_send(to, body)

        transport.send = send
        await engine.orchestrator.handle(_payload("sudah", message_id="m1"))

        assert "context" in seen
        assert seen["context"] is None


class TestIdempotencyAndValidation:

    async def test_duplicate_provider_id_is_ignored(self, engine, reminder, transport):
        await engine.sender.send_reminder(reminder.id)
        first = await engine.orchestrator.handle(_payload("sudah", message_id="dup-1"))
        sends = len(transport.sent)

        second = await engine.orchestrator.handle(_payload("sudah", message_id="dup-1"))

        assert first.action == "confirmed_taken"
        assert second.state == MessageState.DUPLICATE
        assert len(engine.reminders.confirmations) == 1
        assert len(transport.sent) == sends

    async def test_duplicate_without_provider_id_uses_content_hash(self, engine, patient, clock):
        await engine.contexts.set_context(patient.id, ContextKind.VERIFICATION)
        first = await engine.orchestrator.handle(_payload("terserah"))
        clock.advance(seconds=30)
        second = await engine.orchestrator.handle(_payload("terserah"))

        assert first.state == MessageState.CLARIFIED
        assert second.state == MessageState.DUPLICATE

    async def test_unknown_sender_is_dropped(self, engine, transport):
        result = await engine.orchestrator.handle(_payload("ya", sender="089999999999", message_id="m1"))
        assert result.state == MessageState.DROPPED
        assert result.action == "unknown_sender"
        assert transport.sent == []

    @pytest.mark.parametrize("payload", [{"message": "ya"}, {"sender": "0812345678", "message": "   "}, {}])
    async def test_malformed_payload_is_dropped(self, engine, payload):
        result = await engine.orchestrator.handle(payload)
        assert result.state == MessageState.DROPPED
        assert result.action == "invalid_payload"

    async def test_sender_formats_are_equivalent(self, engine, patient):
        """0812…, +62 812… and 62812… all resolve to the same patient"""
        for i, sender in enumerate(["081234567890", "+62 812-3456-7890", "6281234567890"]):
            result = await engine.orchestrator.handle(_payload("ya", sender=sender, message_id=f"m{i}"))
            assert result.patient_id == patient.id

    async def test_processing_error_releases_key(self, engine, patient, monkeypatch):
        """A failed message can be redelivered and processed again"""
        calls = {"n": 0}
        original = engine.contexts.load_active_context

        async def flaky(patient_id):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("db down")
            return await original(patient_id)

        monkeypatch.setattr(engine.contexts, "load_active_context", flaky)

        first = await engine.orchestrator.handle(_payload("ya", message_id="m1"))
        second = await engine.orchestrator.handle(_payload("ya", message_id="m1"))

        assert first.state == MessageState.FAILED
        assert second.state != MessageState.DUPLICATE
