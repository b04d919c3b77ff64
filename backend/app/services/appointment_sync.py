"""
Appointment sync: mirror a Nubimed booking as a GHL calendar appointment.

State per booking is keyed by (contact_id, booking_id). The only persisted
state is the correlation table stored on the contact (see correlation.py).

Create-or-update is a two-step saga:

    existing appointment id known?
      yes -> PUT /calendars/events/appointments/{id}
               2xx                -> done ("updated")
               any failure        -> fall back to POST, once ("updated_via_create")
      no  -> POST /calendars/events/appointments ("created")

The fallback is not a retry: it is a different operation taken at most once,
because having some appointment in the calendar matters more than keeping
the old event id. A failed POST propagates.

The correlation pair is appended only after a successful PUT/POST and only
if the booking id is not yet in the table. Deleting removes the pair at the
same index from both lists.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from app.config import GHLSettings
from app.errors import MissingAppointmentDate, MissingRequiredField, RemoteApiError
from app.models.nubimed import BookingRecord, PatientRecord
from app.services.correlation import CorrelationTable
from app.services.event_log import log_error, log_success, log_warning
from app.services.field_extractor import (
    default_end,
    extract_booking,
    extract_patient,
    parse_datetime,
    render_dates,
    to_ghl_iso,
)
from app.services.ghl_client import GHLClient, extract_appointment_id

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Paciente"
APPOINTMENT_STATUS = "confirmed"


@dataclass
class AppointmentSyncResult:
    appointment_id: str
    booking_id: Optional[str]
    action: str                 # created | updated | updated_via_create
    id_changed: bool = False
    correlation_updated: bool = False


@dataclass
class AppointmentDeleteResult:
    booking_id: str
    appointment_id: Optional[str]
    action: str                 # deleted | already_deleted | ignored
    correlation_updated: bool = False
    reason: Optional[str] = None         # why an "ignored" delete did nothing
    remote_status: Optional[int] = None  # CRM status when the contact read failed


# ---------------------------------------------------------------------------
# Correlation table access
# ---------------------------------------------------------------------------

async def load_correlation(ghl: GHLClient, settings: GHLSettings, contact_id: str) -> Optional[CorrelationTable]:
    """Read the table from the contact; None if the contact cannot be read."""
    try:
        contact = await ghl.get_contact(contact_id)
    except RemoteApiError as exc:
        log_warning("CONTACT_FETCH_FAILED", {"contactId": contact_id, "status": exc.status_code})
        return None
    return CorrelationTable.from_contact(contact, settings.correlation)


async def find_existing_appointment_id(
    ghl: GHLClient,
    settings: GHLSettings,
    contact_id: Optional[str],
    booking_id: Optional[str],
) -> Optional[str]:
    """Appointment id correlated to ``booking_id``; None at any missing step."""
    if not contact_id or not booking_id:
        return None
    table = await load_correlation(ghl, settings, contact_id)
    if table is None:
        return None
    return table.find(booking_id)


async def _rewrite_correlation(
    ghl: GHLClient,
    settings: GHLSettings,
    contact_id: str,
    mutate: Callable[[CorrelationTable], bool],
    event_prefix: str,
) -> bool:
    """
    Read-modify-write the table on the contact.

    ``mutate`` returns True when it changed the table; only then is the
    contact rewritten. Failures are logged and reported as False.
    """
    table = await load_correlation(ghl, settings, contact_id)
    if table is None:
        return False
    if not mutate(table):
        return False

    body = {"customFields": table.to_custom_fields(settings.correlation)}
    booking_csv, appointment_csv = table.to_field_values()
    try:
        await ghl.update_contact(contact_id, body)
    except RemoteApiError as exc:
        log_error(f"{event_prefix}_ERROR", {
            "contactId": contact_id,
            "status": exc.status_code,
            "response": exc.response_body,
        })
        return False

    log_success(event_prefix, {
        "contactId": contact_id,
        "bookingIds": booking_csv,
        "appointmentIds": appointment_csv,
    })
    return True


async def record_correlation(
    ghl: GHLClient,
    settings: GHLSettings,
    contact_id: str,
    booking_id: str,
    appointment_id: str,
) -> bool:
    """Append (booking_id, appointment_id) unless the booking is already known."""

    def append(table: CorrelationTable) -> bool:
        if not table.add(booking_id, appointment_id):
            log_success("BOOKING_ID_EXISTS_SKIP_UPDATE", {
                "contactId": contact_id,
                "nubimedBookingId": booking_id,
                "ghlAppointmentId": appointment_id,
            })
            return False
        return True

    return await _rewrite_correlation(ghl, settings, contact_id, append, "CONTACT_APPOINTMENT_IDS_UPDATED")


async def remove_correlation(
    ghl: GHLClient,
    settings: GHLSettings,
    contact_id: str,
    booking_id: str,
) -> bool:
    def drop(table: CorrelationTable) -> bool:
        if table.remove(booking_id) is None:
            log_warning("BOOKING_ID_NOT_FOUND_FOR_DELETE", {
                "contactId": contact_id,
                "nubimedBookingId": booking_id,
            })
            return False
        return True

    return await _rewrite_correlation(ghl, settings, contact_id, drop, "CONTACT_APPOINTMENT_IDS_REMOVED")


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------

def build_appointment_payload(
    envelope: dict,
    contact_id: str,
    settings: GHLSettings,
    booking: Optional[BookingRecord] = None,
    patient: Optional[PatientRecord] = None,
) -> Tuple[dict, Optional[str]]:
    """
    Build the calendar appointment body for a booking.

    Returns ``(payload, booking_id)``. ``booking`` and ``patient`` are
    extracted from the envelope when the caller has not done so already.

    Raises:
        MissingAppointmentDate: no start time, or one that cannot be parsed.
    """
    if booking is None:
        booking = extract_booking(envelope, settings.timezone, include_patients=False)
    if not booking.start_at:
        raise MissingAppointmentDate("Appointment start time is required")

    start = render_dates(booking.start_at, settings.timezone)
    if start is None:
        raise MissingAppointmentDate("Invalid appointment date format")

    end_moment = parse_datetime(booking.end_at, settings.timezone) or default_end(start.moment)

    if patient is None:
        patient = extract_patient(envelope, settings.timezone)
    title = patient.full_name or DEFAULT_TITLE
    if booking.doctor and booking.doctor.full_name:
        title = f"{title} - {booking.doctor.full_name}"

    payload = {
        "locationId": settings.location_id,
        "calendarId": settings.calendar_id,
        "contactId": contact_id,
        "assignedUserId": settings.assigned_user_id,
        "title": title,
        "startTime": start.iso,
        "endTime": to_ghl_iso(end_moment),
        "appointmentStatus": APPOINTMENT_STATUS,
        "ignoreFreeSlotValidation": True,
    }
    if booking.comment:
        payload["description"] = booking.comment

    return payload, booking.id


# ---------------------------------------------------------------------------
# Create / update / delete
# ---------------------------------------------------------------------------

async def _attempt_update(
    ghl: GHLClient,
    existing_appointment_id: str,
    payload: dict,
    booking_id: Optional[str],
) -> Optional[AppointmentSyncResult]:
    """First saga step. Returns None on any failure so the caller can create."""
    try:
        result = await ghl.update_appointment(existing_appointment_id, payload)
    except RemoteApiError as exc:
        log_warning("APPOINTMENT_UPDATE_FAILED", {
            "status": exc.status_code,
            "error": exc.message,
            "existingAppointmentId": existing_appointment_id,
            "willTryCreate": True,
        })
        return None

    appointment_id = extract_appointment_id(result) or existing_appointment_id
    id_changed = appointment_id != existing_appointment_id
    log_success("APPOINTMENT_UPDATED", {
        "appointmentId": appointment_id,
        "existingAppointmentId": existing_appointment_id,
        "nubimedBookingId": booking_id,
        "idChanged": id_changed,
    })
    return AppointmentSyncResult(
        appointment_id=appointment_id,
        booking_id=booking_id,
        action="updated",
        id_changed=id_changed,
    )


async def create_or_update_appointment(
    envelope: dict,
    contact_id: str,
    ghl: GHLClient,
    settings: GHLSettings,
    existing_appointment_id: Optional[str] = None,
    booking: Optional[BookingRecord] = None,
    patient: Optional[PatientRecord] = None,
) -> AppointmentSyncResult:
    """
    Update the known appointment, falling back to a single create.

    Raises:
        ConfigurationError, MissingRequiredField, MissingAppointmentDate,
        RemoteApiError (create failed).
    """
    settings.require_credentials()
    if not contact_id:
        raise MissingRequiredField("Contact ID is required to create appointment")

    payload, booking_id = build_appointment_payload(
        envelope, contact_id, settings, booking=booking, patient=patient,
    )
    log_success("APPOINTMENT_CREATE_ATTEMPT", {
        "appointmentPayload": payload,
        "nubimedBookingId": booking_id,
        "existingAppointmentId": existing_appointment_id,
    })

    if existing_appointment_id:
        updated = await _attempt_update(ghl, existing_appointment_id, payload, booking_id)
        if updated is not None:
            return updated

    try:
        result = await ghl.create_appointment(payload)
    except RemoteApiError as exc:
        log_error("APPOINTMENT_CREATE_ERROR", {
            "status": exc.status_code,
            "response": exc.response_body,
            "appointmentPayload": payload,
        })
        raise

    appointment_id = extract_appointment_id(result)
    if not appointment_id:
        raise RemoteApiError("GHL appointment response did not include an id", response_body=result)

    log_success("APPOINTMENT_CREATED", {"appointmentId": appointment_id, "nubimedBookingId": booking_id})
    return AppointmentSyncResult(
        appointment_id=appointment_id,
        booking_id=booking_id,
        action="updated_via_create" if existing_appointment_id else "created",
    )


async def sync_appointment(
    envelope: dict,
    contact_id: str,
    ghl: GHLClient,
    settings: GHLSettings,
    patient: Optional[PatientRecord] = None,
) -> AppointmentSyncResult:
    """
    Look up, create-or-update, then record the correlation.

    The booking is extracted once here. Pass the patient already resolved by
    the contact sync to avoid extracting it again.
    """
    booking = extract_booking(envelope, settings.timezone, include_patients=False)
    booking_id = booking.id
    existing_id = await find_existing_appointment_id(ghl, settings, contact_id, booking_id)

    result = await create_or_update_appointment(
        envelope, contact_id, ghl, settings, existing_id, booking=booking, patient=patient,
    )

    if booking_id:
        result.correlation_updated = await record_correlation(
            ghl, settings, contact_id, booking_id, result.appointment_id,
        )
    return result


async def delete_booking_appointment(
    ghl: GHLClient,
    settings: GHLSettings,
    contact_id: str,
    booking_id: str,
) -> AppointmentDeleteResult:
    """
    Delete the calendar event correlated to ``booking_id``.

    Nothing correlated -> action "ignored", no remote delete. The reason is
    "contact_unreadable" when the contact could not be fetched and
    "not_correlated" when its table has no entry for the booking. A 404 from
    the CRM delete counts as already deleted. Other delete failures propagate.
    """
    settings.require_credentials()
    if not contact_id:
        raise MissingRequiredField("contact_id is required")
    if not booking_id:
        raise MissingRequiredField("booking_id is required")

    try:
        contact = await ghl.get_contact(contact_id)
    except RemoteApiError as exc:
        log_warning("CONTACT_FETCH_FAILED", {"contactId": contact_id, "status": exc.status_code})
        return AppointmentDeleteResult(
            booking_id=booking_id,
            appointment_id=None,
            action="ignored",
            reason="contact_unreadable",
            remote_status=exc.status_code,
        )

    appointment_id = CorrelationTable.from_contact(contact, settings.correlation).find(booking_id)
    if not appointment_id:
        log_warning("NO_APPOINTMENT_FOR_BOOKING", {"contactId": contact_id, "nubimedBookingId": booking_id})
        return AppointmentDeleteResult(
            booking_id=booking_id, appointment_id=None, action="ignored", reason="not_correlated",
        )

    log_success("APPOINTMENT_DELETE_ATTEMPT", {"appointmentId": appointment_id})
    try:
        action = await ghl.delete_event(appointment_id)
    except RemoteApiError as exc:
        log_error("APPOINTMENT_DELETE_ERROR", {
            "appointmentId": appointment_id,
            "status": exc.status_code,
            "response": exc.response_body,
        })
        raise

    correlation_updated = await remove_correlation(ghl, settings, contact_id, booking_id)
    return AppointmentDeleteResult(
        booking_id=booking_id,
        appointment_id=appointment_id,
        action=action,
        correlation_updated=correlation_updated,
    )
