"""
Appointment sync tests: the update-then-create saga, the correlation table
stored on the contact, and booking deletion.
"""

from unittest.mock import patch

import pytest

from conftest import booking_envelope
from app.config import DEFAULT_ASSIGNED_USER_ID, DEFAULT_CALENDAR_ID
from app.errors import MissingAppointmentDate, MissingRequiredField, RemoteApiError
from app.services.appointment_sync import (
    build_appointment_payload,
    create_or_update_appointment,
    delete_booking_appointment,
    find_existing_appointment_id,
    sync_appointment,
)
from app.services.field_extractor import extract_booking, extract_patient


def _assert_aligned(table):
    assert len(table.booking_ids) == len(table.appointment_ids)


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------

class TestBuildAppointmentPayload:

    def test_default_shape(self, settings):
        payload, booking_id = build_appointment_payload(booking_envelope(), "C1", settings)

        assert booking_id == "B1"
        assert payload == {
            "locationId": "loc1",
            "calendarId": DEFAULT_CALENDAR_ID,
            "contactId": "C1",
            "assignedUserId": DEFAULT_ASSIGNED_USER_ID,
            "title": "Ana Ruiz",
            "startTime": "2025-01-10T09:00:00.000Z",
            "endTime": "2025-01-10T09:30:00.000Z",
            "appointmentStatus": "confirmed",
            "ignoreFreeSlotValidation": True,
        }

    def test_doctor_end_time_and_comment(self, settings):
        envelope = booking_envelope()
        envelope["data"]["doctor"] = {"name": "Laura", "surname": "Gómez"}
        envelope["data"]["booking"]["end_at"] = "2025-01-10T10:15:00Z"
        envelope["data"]["booking"]["comment"] = "Revisión anual"

        payload, _ = build_appointment_payload(envelope, "C1", settings)

        assert payload["title"] == "Ana Ruiz - Laura Gómez"
        assert payload["endTime"] == "2025-01-10T10:15:00.000Z"
        assert payload["description"] == "Revisión anual"

    def test_title_defaults_without_patient_name(self, settings):
        envelope = booking_envelope(name="new_booking")
        envelope["data"]["booking"]["patients"] = [{"phone": "600111222"}]
        payload, _ = build_appointment_payload(envelope, "C1", settings)
        assert payload["title"] == "Paciente"

    def test_missing_start_time(self, settings):
        with pytest.raises(MissingAppointmentDate) as exc_info:
            build_appointment_payload(booking_envelope(start_at=None), "C1", settings)
        assert exc_info.value.message == "Appointment start time is required"

    def test_unparseable_start_time(self, settings):
        with pytest.raises(MissingAppointmentDate) as exc_info:
            build_appointment_payload(booking_envelope(start_at="next tuesday"), "C1", settings)
        assert exc_info.value.message == "Invalid appointment date format"


# ---------------------------------------------------------------------------
# Create / update saga
# ---------------------------------------------------------------------------

class TestSyncAppointment:

    @pytest.mark.asyncio
    async def test_first_sync_creates_and_records_correlation(self, settings, fake_ghl):
        fake_ghl.seed_contact("C1")

        async with fake_ghl.client(settings) as ghl:
            result = await sync_appointment(booking_envelope(), "C1", ghl, settings)

        assert result.action == "created"
        assert result.appointment_id == "evt1"
        assert result.booking_id == "B1"
        assert result.correlation_updated is True
        assert list(fake_ghl.correlation("C1")) == [("B1", "evt1")]

        (_, _, body), = fake_ghl.calls_to("PUT", "/contacts/C1")
        assert "locationId" not in body

    @pytest.mark.asyncio
    async def test_known_booking_is_updated_in_place(self, settings, fake_ghl):
        """An update that succeeds leaves the correlation table untouched."""
        fake_ghl.seed_contact("C1", booking_ids="B1", appointment_ids="evt-old")

        async with fake_ghl.client(settings) as ghl:
            result = await sync_appointment(booking_envelope(), "C1", ghl, settings)

        assert result.action == "updated"
        assert result.appointment_id == "evt-old"
        assert result.id_changed is False
        assert result.correlation_updated is False
        assert len(fake_ghl.calls_to("PUT", "/calendars/events/appointments/evt-old")) == 1
        assert fake_ghl.calls_to("POST", "/calendars/events/appointments") == []
        assert fake_ghl.calls_to("PUT", "/contacts/") == []

    @pytest.mark.asyncio
    async def test_resync_twice_is_idempotent(self, settings, fake_ghl):
        fake_ghl.seed_contact("C1")

        async with fake_ghl.client(settings) as ghl:
            first = await sync_appointment(booking_envelope(), "C1", ghl, settings)
            second = await sync_appointment(booking_envelope(), "C1", ghl, settings)
            third = await sync_appointment(booking_envelope(), "C1", ghl, settings)

        assert first.action == "created"
        assert second.action == "updated"
        assert third.action == "updated"
        assert list(fake_ghl.correlation("C1")) == [("B1", "evt1")]
        assert len(fake_ghl.calls_to("PUT", "/contacts/C1")) == 1

    @pytest.mark.asyncio
    async def test_failed_update_falls_back_to_single_create(self, settings, fake_ghl):
        fake_ghl.seed_contact("C1", booking_ids="B1", appointment_ids="evt-old")
        fake_ghl.fail("PUT", "/calendars/events/appointments/evt-old", status=404)

        async with fake_ghl.client(settings) as ghl:
            result = await sync_appointment(booking_envelope(), "C1", ghl, settings)

        assert result.action == "updated_via_create"
        assert result.appointment_id == "evt1"
        assert len(fake_ghl.calls_to("POST", "/calendars/events/appointments")) == 1
        # Known booking ids are never re-pointed
        assert result.correlation_updated is False
        assert list(fake_ghl.correlation("C1")) == [("B1", "evt-old")]

    @pytest.mark.asyncio
    async def test_failed_create_propagates(self, settings, fake_ghl):
        fake_ghl.seed_contact("C1")
        fake_ghl.fail("POST", "/calendars/events/appointments", status=422)

        async with fake_ghl.client(settings) as ghl:
            with pytest.raises(RemoteApiError) as exc_info:
                await sync_appointment(booking_envelope(), "C1", ghl, settings)

        assert exc_info.value.status_code == 422
        assert fake_ghl.calls_to("PUT", "/contacts/") == []
        assert len(fake_ghl.correlation("C1")) == 0

    @pytest.mark.asyncio
    async def test_failed_update_then_failed_create_propagates(self, settings, fake_ghl):
        fake_ghl.seed_contact("C1", booking_ids="B1", appointment_ids="evt-old")
        fake_ghl.fail("PUT", "/calendars/events/appointments/evt-old", status=500)
        fake_ghl.fail("POST", "/calendars/events/appointments", status=500)

        async with fake_ghl.client(settings) as ghl:
            with pytest.raises(RemoteApiError):
                await sync_appointment(booking_envelope(), "C1", ghl, settings)

        assert len(fake_ghl.calls_to("POST", "/calendars/events/appointments")) == 1

    @pytest.mark.asyncio
    async def test_unreadable_contact_means_no_correlation(self, settings, fake_ghl):
        async with fake_ghl.client(settings) as ghl:
            assert await find_existing_appointment_id(ghl, settings, "ghost", "B1") is None
            result = await sync_appointment(booking_envelope(), "ghost", ghl, settings)

        assert result.action == "created"
        assert result.correlation_updated is False

    @pytest.mark.asyncio
    async def test_correlation_write_failure_is_not_fatal(self, settings, fake_ghl):
        fake_ghl.seed_contact("C1")
        fake_ghl.fail("PUT", "/contacts/C1", status=400)

        async with fake_ghl.client(settings) as ghl:
            result = await sync_appointment(booking_envelope(), "C1", ghl, settings)

        assert result.action == "created"
        assert result.correlation_updated is False

    @pytest.mark.asyncio
    async def test_missing_contact_id(self, settings, fake_ghl):
        async with fake_ghl.client(settings) as ghl:
            with pytest.raises(MissingRequiredField):
                await create_or_update_appointment(booking_envelope(), "", ghl, settings)
        assert fake_ghl.calls == []

    @pytest.mark.asyncio
    async def test_booking_and_patient_are_extracted_once(self, settings, fake_ghl):
        """A patient handed over by the contact sync is reused as-is."""
        fake_ghl.seed_contact("C1")
        envelope = booking_envelope(country="Atlantis")
        patient = extract_patient(envelope, settings.timezone)

        with patch(
            "app.services.appointment_sync.extract_booking", wraps=extract_booking,
        ) as booking_spy, patch(
            "app.services.appointment_sync.extract_patient", wraps=extract_patient,
        ) as patient_spy:
            async with fake_ghl.client(settings) as ghl:
                result = await sync_appointment(envelope, "C1", ghl, settings, patient=patient)

        assert result.action == "created"
        assert booking_spy.call_count == 1
        patient_spy.assert_not_called()
        (_, _, body), = fake_ghl.calls_to("POST", "/calendars/events/appointments")
        assert body["title"] == "Ana Ruiz"


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

class TestDeleteBookingAppointment:

    @pytest.mark.asyncio
    async def test_delete_removes_event_and_pair(self, settings, fake_ghl):
        fake_ghl.seed_contact("C1", booking_ids="B1,B2", appointment_ids="evt1,evt2")

        async with fake_ghl.client(settings) as ghl:
            result = await delete_booking_appointment(ghl, settings, "C1", "B1")

        assert result.action == "deleted"
        assert result.appointment_id == "evt1"
        assert result.correlation_updated is True
        assert len(fake_ghl.calls_to("DELETE", "/calendars/events/evt1")) == 1
        assert list(fake_ghl.correlation("C1")) == [("B2", "evt2")]

    @pytest.mark.asyncio
    async def test_remote_404_counts_as_already_deleted(self, settings, fake_ghl):
        fake_ghl.seed_contact("C1", booking_ids="B1", appointment_ids="evt1")
        fake_ghl.fail("DELETE", "/calendars/events/evt1", status=404)

        async with fake_ghl.client(settings) as ghl:
            result = await delete_booking_appointment(ghl, settings, "C1", "B1")

        assert result.action == "already_deleted"
        assert result.correlation_updated is True
        assert len(fake_ghl.correlation("C1")) == 0

    @pytest.mark.asyncio
    async def test_uncorrelated_booking_is_ignored_without_remote_delete(self, settings, fake_ghl):
        fake_ghl.seed_contact("C1", booking_ids="B2", appointment_ids="evt2")

        async with fake_ghl.client(settings) as ghl:
            result = await delete_booking_appointment(ghl, settings, "C1", "B1")

        assert result.action == "ignored"
        assert result.appointment_id is None
        assert result.reason == "not_correlated"
        assert fake_ghl.calls_to("DELETE") == []
        assert fake_ghl.calls_to("PUT") == []

    @pytest.mark.asyncio
    async def test_unreadable_contact_is_ignored_with_remote_status(self, settings, fake_ghl):
        fake_ghl.fail("GET", "/contacts/C1", status=503)

        async with fake_ghl.client(settings) as ghl:
            result = await delete_booking_appointment(ghl, settings, "C1", "B1")

        assert result.action == "ignored"
        assert result.reason == "contact_unreadable"
        assert result.remote_status == 503
        assert fake_ghl.calls_to("DELETE") == []

    @pytest.mark.asyncio
    async def test_other_remote_errors_propagate(self, settings, fake_ghl):
        fake_ghl.seed_contact("C1", booking_ids="B1", appointment_ids="evt1")
        fake_ghl.fail("DELETE", "/calendars/events/evt1", status=500)

        async with fake_ghl.client(settings) as ghl:
            with pytest.raises(RemoteApiError) as exc_info:
                await delete_booking_appointment(ghl, settings, "C1", "B1")

        assert exc_info.value.status_code == 500
        assert list(fake_ghl.correlation("C1")) == [("B1", "evt1")]


# ---------------------------------------------------------------------------
# Table invariant across a sequence of operations
# ---------------------------------------------------------------------------

class TestCorrelationSequence:

    @pytest.mark.asyncio
    async def test_lists_stay_aligned(self, settings, fake_ghl):
        fake_ghl.seed_contact("C1")

        async with fake_ghl.client(settings) as ghl:
            for booking_id in ("B1", "B2", "B3"):
                await sync_appointment(booking_envelope(booking_id=booking_id), "C1", ghl, settings)
                _assert_aligned(fake_ghl.correlation("C1"))

            await sync_appointment(booking_envelope(booking_id="B2"), "C1", ghl, settings)
            _assert_aligned(fake_ghl.correlation("C1"))

            await delete_booking_appointment(ghl, settings, "C1", "B2")
            _assert_aligned(fake_ghl.correlation("C1"))

            await delete_booking_appointment(ghl, settings, "C1", "B9")
            _assert_aligned(fake_ghl.correlation("C1"))

        assert list(fake_ghl.correlation("C1")) == [("B1", "evt1"), ("B3", "evt3")]
