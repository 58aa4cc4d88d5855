"""
Reminder Lifecycle Tracker Tests

Covers delivery logging (including duplicate gateway callbacks), the
confirmation cycle, ownership checks and the derived-status precedence
used by the volunteer dashboard.
"""

import uuid
from datetime import date, datetime, timedelta, timezone

import pytest

from prima.errors import NotFoundError, ValidationError
from prima.models import (
    ConfirmationSource,
    ConfirmationStatus,
    DeliveryAction,
    DeliveryLog,
    ManualConfirmation,
    ReminderStatus,
)
from prima.services.reminder_tracker import DerivedState, derive_status, map_gateway_status

from conftest import make_patient, make_reminder

T0 = datetime(2024, 5, 6, 1, 0, tzinfo=timezone.utc)


def _log(reminder, action, at, gateway_message_id=None):
    return DeliveryLog(
        id=uuid.uuid4(),
        reminder_id=reminder.id,
        patient_id=reminder.patient_id,
        action=action,
        gateway_message_id=gateway_message_id,
        gateway_response={},
        meta={},
        created_at=at,
    )


def _confirmation(patient_id, at, *, taken=True, reminder_id=None, delivery_log_id=None):
    return ManualConfirmation(
        id=uuid.uuid4(),
        patient_id=patient_id,
        reminder_id=reminder_id,
        delivery_log_id=delivery_log_id,
        taken=taken,
        notes=None,
        source=ConfirmationSource.MANUAL_ENTRY,
        confirmed_at=at,
    )


class TestMapGatewayStatus:

    @pytest.mark.parametrize("raw,action", [
        ("sent", DeliveryAction.SENT),
        ("DELIVERED", DeliveryAction.DELIVERED),
        ("read", DeliveryAction.DELIVERED),
        ("failed", DeliveryAction.FAILED),
        ("something-else", None),
        (None, None),
    ])
    def test_mapping(self, raw, action):
        assert map_gateway_status(raw) == action


class TestDeriveStatus:
    """Tests for the pure derive_status() precedence"""

    def setup_method(self):
        self.patient = make_patient()
        self.reminder = make_reminder(self.patient, start_date=date(2024, 5, 1))

    def test_no_delivery_is_scheduled(self):
        status = derive_status(self.reminder, [], [])
        assert status.status == DerivedState.SCHEDULED
        assert status.as_of == date(2024, 5, 1)
        assert status.id_suffix == "schedule"

    def test_sent_without_confirmation_is_pending(self):
        sent = _log(self.reminder, DeliveryAction.SENT, T0)
        status = derive_status(self.reminder, [sent], [])
        assert status.status == DerivedState.PENDING
        assert status.delivery_log_id == sent.id

    def test_delivered_is_pending_like_sent(self):
        logs = [_log(self.reminder, DeliveryAction.SENT, T0), _log(self.reminder, DeliveryAction.DELIVERED, T0 + timedelta(seconds=5))]
        assert derive_status(self.reminder, logs, []).status == DerivedState.PENDING

    def test_failed_latest_delivery_falls_back_to_scheduled(self):
        failed = _log(self.reminder, DeliveryAction.FAILED, T0)
        assert derive_status(self.reminder, [failed], []).status == DerivedState.SCHEDULED

    def test_confirmation_linked_to_latest_delivery_wins(self):
        """A log-linked confirmation beats a newer patient-level one"""
        sent = _log(self.reminder, DeliveryAction.SENT, T0)
        linked = _confirmation(self.patient.id, T0 + timedelta(minutes=5), taken=False,
                               reminder_id=self.reminder.id, delivery_log_id=sent.id)
        loose = _confirmation(self.patient.id, T0 + timedelta(minutes=10), taken=True)

        status = derive_status(self.reminder, [sent], [loose, linked])
        assert status.status == DerivedState.COMPLETED_NOT_TAKEN
        assert status.id_suffix == "log-confirmation"
        assert status.confidence == "high"
        assert status.confirmation_id == linked.id

    def test_linked_confirmation_on_delivered_log_wins(self):
        """Latest log DELIVERED: the log-linked outcome beats a newer patient-level one"""
        delivered = _log(self.reminder, DeliveryAction.DELIVERED, T0, gateway_message_id="wamid-1")
        linked = _confirmation(self.patient.id, T0 + timedelta(minutes=5), taken=True,
                               reminder_id=self.reminder.id, delivery_log_id=delivered.id)
        loose = _confirmation(self.patient.id, T0 + timedelta(minutes=10), taken=False)

        status = derive_status(self.reminder, [delivered], [loose, linked])
        assert status.status == DerivedState.COMPLETED_TAKEN
        assert status.id_suffix == "log-confirmation"
        assert status.confirmation_id == linked.id

    def test_confirmation_linked_by_gateway_message_id(self):
        """A confirmation on the 'sent' log still counts after a 'delivered' callback"""
        sent = _log(self.reminder, DeliveryAction.SENT, T0, gateway_message_id="wamid-1")
        delivered = _log(self.reminder, DeliveryAction.DELIVERED, T0 + timedelta(minutes=10), gateway_message_id="wamid-1")
        linked = _confirmation(self.patient.id, T0 + timedelta(minutes=5),
                               reminder_id=self.reminder.id, delivery_log_id=sent.id)

        status = derive_status(self.reminder, [sent, delivered], [linked])
        assert status.status == DerivedState.COMPLETED_TAKEN
        assert status.id_suffix == "log-confirmation"

    def test_confirmation_for_previous_delivery_is_ignored(self):
        """Yesterday's confirmation does not complete today's send"""
        yesterday = _log(self.reminder, DeliveryAction.SENT, T0 - timedelta(days=1), gateway_message_id="wamid-1")
        today = _log(self.reminder, DeliveryAction.SENT, T0, gateway_message_id="wamid-2")
        old = _confirmation(self.patient.id, T0 - timedelta(hours=23),
                            reminder_id=self.reminder.id, delivery_log_id=yesterday.id)

        assert derive_status(self.reminder, [yesterday, today], [old]).status == DerivedState.PENDING

    def test_reminder_level_confirmation_after_delivery(self):
        sent = _log(self.reminder, DeliveryAction.SENT, T0)
        confirmation = _confirmation(self.patient.id, T0 + timedelta(minutes=1), reminder_id=self.reminder.id)
        status = derive_status(self.reminder, [sent], [confirmation])
        assert status.status == DerivedState.COMPLETED_TAKEN
        assert status.confidence == "high"

    def test_patient_level_confirmation_is_low_confidence(self):
        sent = _log(self.reminder, DeliveryAction.SENT, T0)
        confirmation = _confirmation(self.patient.id, T0 + timedelta(minutes=1), taken=False)
        status = derive_status(self.reminder, [sent], [confirmation])
        assert status.status == DerivedState.COMPLETED_NOT_TAKEN
        assert status.id_suffix == "patient-confirmation"
        assert status.confidence == "low"

    def test_patient_level_confirmation_before_delivery_is_ignored(self):
        sent = _log(self.reminder, DeliveryAction.SENT, T0)
        confirmation = _confirmation(self.patient.id, T0 - timedelta(minutes=1))
        assert derive_status(self.reminder, [sent], [confirmation]).status == DerivedState.PENDING

    def test_patient_level_confirmation_without_delivery_is_ignored(self):
        confirmation = _confirmation(self.patient.id, T0)
        assert derive_status(self.reminder, [], [confirmation]).status == DerivedState.SCHEDULED

    def test_other_patients_confirmations_are_ignored(self):
        sent = _log(self.reminder, DeliveryAction.SENT, T0)
        stranger = _confirmation(uuid.uuid4(), T0 + timedelta(minutes=1), reminder_id=self.reminder.id)
        assert derive_status(self.reminder, [sent], [stranger]).status == DerivedState.PENDING

    def test_input_order_does_not_matter(self):
        sent = _log(self.reminder, DeliveryAction.SENT, T0)
        delivered = _log(self.reminder, DeliveryAction.DELIVERED, T0 + timedelta(minutes=1))
        assert derive_status(self.reminder, [sent, delivered], []) == derive_status(self.reminder, [delivered, sent], [])


class TestRecordDelivery:
    """Tests for ReminderTracker.record_delivery()"""

    async def test_sent_updates_reminder(self, engine, reminder, clock):
        log = await engine.tracker.record_delivery(reminder.id, DeliveryAction.SENT, gateway_message_id="wamid-1")

        assert log is not None
        assert reminder.status == ReminderStatus.SENT
        assert reminder.sent_at == clock.now
        assert reminder.gateway_message_id == "wamid-1"
        assert reminder.confirmation_status == ConfirmationStatus.PENDING

    async def test_duplicate_callback_is_a_no_op(self, engine, reminder):
        """Same (gateway_message_id, outcome) twice: one log, one state change"""
        await engine.tracker.record_delivery(reminder.id, DeliveryAction.SENT, gateway_message_id="wamid-1")
        await engine.tracker.record_delivery(reminder.id, DeliveryAction.DELIVERED, gateway_message_id="wamid-1")
        again = await engine.tracker.record_delivery(reminder.id, DeliveryAction.DELIVERED, gateway_message_id="wamid-1")

        assert again is None
        logs = await engine.reminders.list_logs(reminder.id)
        assert [log.action for log in logs].count(DeliveryAction.DELIVERED) == 1
        assert reminder.status == ReminderStatus.DELIVERED

    async def test_late_sent_does_not_downgrade_delivered(self, engine, reminder):
        await engine.tracker.record_delivery(reminder.id, DeliveryAction.DELIVERED, gateway_message_id="wamid-1")
        reminder.gateway_message_id = "wamid-1"
        await engine.tracker.record_delivery(reminder.id, DeliveryAction.SENT, gateway_message_id="wamid-1")
        assert reminder.status == ReminderStatus.DELIVERED

    async def test_new_send_resets_confirmation_cycle(self, engine, reminder, clock):
        await engine.tracker.record_delivery(reminder.id, DeliveryAction.SENT, gateway_message_id="wamid-1")
        await engine.tracker.record_confirmation(reminder.patient_id, reminder.id, True)
        assert reminder.confirmation_status == ConfirmationStatus.CONFIRMED

        clock.advance(days=1)
        await engine.tracker.record_delivery(reminder.id, DeliveryAction.SENT, gateway_message_id="wamid-2")
        assert reminder.confirmation_status == ConfirmationStatus.PENDING
        assert reminder.confirmation_response_at is None

    async def test_rejects_non_delivery_outcome(self, engine, reminder):
        with pytest.raises(ValidationError):
            await engine.tracker.record_delivery(reminder.id, DeliveryAction.CONFIRMED)

    async def test_unknown_reminder(self, engine):
        with pytest.raises(NotFoundError):
            await engine.tracker.record_delivery(uuid.uuid4(), DeliveryAction.SENT)

    async def test_by_gateway_id_ignores_unknown_messages(self, engine, reminder):
        assert await engine.tracker.record_delivery_by_gateway_id("nope", DeliveryAction.DELIVERED) is None

    async def test_by_gateway_id_routes_to_reminder(self, engine, reminder):
        await engine.tracker.record_delivery(reminder.id, DeliveryAction.SENT, gateway_message_id="wamid-9")
        log = await engine.tracker.record_delivery_by_gateway_id("wamid-9", DeliveryAction.DELIVERED)
        assert log.reminder_id == reminder.id
        assert reminder.status == ReminderStatus.DELIVERED


class TestRecordConfirmation:
    """Tests for ReminderTracker.record_confirmation()"""

    async def test_links_latest_delivery_and_logs_it(self, engine, reminder):
        sent = await engine.tracker.record_delivery(reminder.id, DeliveryAction.SENT, gateway_message_id="wamid-1")
        confirmation = await engine.tracker.record_confirmation(
            reminder.patient_id, reminder.id, False, "lupa", volunteer_id=uuid.uuid4()
        )

        assert confirmation.delivery_log_id == sent.id
        assert reminder.confirmation_status == ConfirmationStatus.MISSED
        assert reminder.confirmation_response == "lupa"
        actions = [log.action for log in await engine.reminders.list_logs(reminder.id)]
        assert DeliveryAction.MISSED in actions

        status = await engine.tracker.get_status(reminder.id)
        assert status.status == DerivedState.COMPLETED_NOT_TAKEN

    async def test_rejects_reminder_of_another_patient(self, engine, reminder):
        other = make_patient(phone="6289999999999")
        with pytest.raises(ValidationError):
            await engine.tracker.record_confirmation(other.id, reminder.id, True)
        assert engine.reminders.confirmations == []

    async def test_patient_reply_needs_a_delivery(self, engine, reminder):
        with pytest.raises(ValidationError):
            await engine.tracker.record_confirmation(
                reminder.patient_id, reminder.id, True, source=ConfirmationSource.PATIENT_TEXT
            )

    async def test_manual_entry_without_delivery_is_allowed(self, engine, reminder):
        confirmation = await engine.tracker.record_confirmation(reminder.patient_id, reminder.id, True)
        assert confirmation.delivery_log_id is None

    async def test_patient_level_confirmation(self, engine, patient):
        confirmation = await engine.tracker.record_confirmation(patient.id, None, True, "via telepon")
        assert confirmation.reminder_id is None
        assert len(engine.reminders.confirmations) == 1

    async def test_list_patient_statuses(self, engine, patient, reminder):
        second = make_reminder(patient, scheduled_time="20:00")
        engine.reminders.reminders[second.id] = second
        await engine.tracker.record_delivery(reminder.id, DeliveryAction.SENT, gateway_message_id="wamid-1")

        rows = await engine.tracker.list_patient_statuses(patient.id)
        by_id = {r.id: status.status for r, status in rows}
        assert by_id == {reminder.id: DerivedState.PENDING, second.id: DerivedState.SCHEDULED}
