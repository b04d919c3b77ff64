"""
Contact sync: upsert the booking's patient as a GHL contact.

Steps:
1. If the webhook already names a GHL contact id and that contact exists,
   reuse it and skip the upsert entirely.
2. Extract the patient (see field_extractor for the source priority).
3. Require a phone or an email, and a parseable appointment date.
4. Build the upsert body: identity, optional address/birth-date fields,
   source tag, and custom fields (last appointment date in two formats,
   national id, sex).
5. POST /contacts/upsert. The CRM deduplicates by phone/email, so replays
   of the same webhook update the same contact.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from app.config import GHLSettings
from app.errors import MissingAppointmentDate, MissingContactInfo, RemoteApiError
from app.models.nubimed import PatientRecord
from app.services.event_log import log_error, log_success, log_warning, truncate
from app.services.field_extractor import (
    AppointmentDates,
    as_dict,
    extract_patient,
    first_present,
    render_dates,
    resolve_start_time,
)
from app.services.ghl_client import GHLClient

logger = logging.getLogger(__name__)

# Nubimed sex values -> labels used by the CRM's "sexo" dropdown
SEX_LABELS = {
    "male": "Hombre",
    "female": "Mujer",
}


@dataclass
class ContactSyncResult:
    contact_id: str
    is_new: bool
    reused_existing: bool = False
    response: dict = field(default_factory=dict)
    patient: Optional[PatientRecord] = None


def strip_empty(values: dict) -> dict:
    """Drop None and blank-string entries; the CRM treats "" as a value."""
    cleaned = {}
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        if isinstance(value, (list, dict)) and not value:
            continue
        cleaned[key] = value
    return cleaned


def map_sex(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return SEX_LABELS.get(value.strip().lower(), value.strip())


def resolve_known_contact_id(envelope: dict) -> Optional[str]:
    """A GHL contact id carried by the webhook itself, if any."""
    data = as_dict(envelope.get("data"))
    value = first_present(
        envelope.get("ghl_contact_id"),
        envelope.get("contact_id"),
        envelope.get("contactId"),
        data.get("ghl_contact_id"),
        data.get("contact_id"),
        data.get("contactId"),
    )
    if value is None:
        return None
    return str(value).strip() or None


def build_custom_fields(
    patient: PatientRecord,
    dates: AppointmentDates,
    settings: GHLSettings,
) -> list:
    keys = settings.contact_fields
    custom_fields = [
        {"key": keys.appointment_date, "field_value": dates.civil_date},
        {"key": keys.appointment_date_text, "field_value": dates.display},
    ]
    if patient.nin:
        custom_fields.append({"key": keys.national_id, "field_value": patient.nin})
    sex_label = map_sex(patient.sex)
    if sex_label:
        custom_fields.append({"key": keys.sex, "field_value": sex_label})
    return custom_fields


def build_contact_payload(
    patient: PatientRecord,
    dates: AppointmentDates,
    settings: GHLSettings,
) -> dict:
    """Upsert body for POST /contacts/upsert, with empty fields removed."""
    payload = {
        "locationId": settings.location_id,
        "phone": patient.phone,
        "email": patient.email,
        "firstName": patient.name,
        "lastName": patient.surname,
        "name": patient.full_name,
        "address1": patient.address,
        "city": patient.city,
        "state": patient.province,
        "postalCode": patient.postal_code,
        "country": patient.country,
        "dateOfBirth": patient.birth_date,
        "source": settings.contact_source,
        "tags": list(settings.contact_tags),
        "customFields": build_custom_fields(patient, dates, settings),
    }
    return strip_empty(payload)


def _is_new_contact(result: dict) -> bool:
    if isinstance(result.get("new"), bool):
        return result["new"]
    contact = as_dict(result.get("contact"))
    created_at = contact.get("createdAt")
    return created_at is not None and created_at == contact.get("updatedAt")


async def verify_contact(ghl: GHLClient, contact_id: str) -> bool:
    """True if ``contact_id`` exists in the CRM. Failures count as "no"."""
    try:
        contact = await ghl.get_contact(contact_id)
    except RemoteApiError as exc:
        log_warning("KNOWN_CONTACT_NOT_VERIFIED", {
            "contactId": contact_id,
            "status": exc.status_code,
            "error": exc.message,
        })
        return False
    return bool(contact)


async def sync_contact(envelope: dict, ghl: GHLClient, settings: GHLSettings) -> ContactSyncResult:
    """
    Upsert the webhook's patient and return the CRM contact id.

    Raises:
        ConfigurationError:     token or location id missing.
        MissingContactInfo:     neither phone nor email could be extracted.
        MissingAppointmentDate: no parseable appointment date.
        RemoteApiError:         the upsert failed.
    """
    settings.require_credentials()

    known_contact_id = resolve_known_contact_id(envelope)
    if known_contact_id and await verify_contact(ghl, known_contact_id):
        log_success("KNOWN_CONTACT_REUSED", {"contactId": known_contact_id})
        return ContactSyncResult(contact_id=known_contact_id, is_new=False, reused_existing=True)

    patient = extract_patient(envelope, settings.timezone)
    log_event_data = {
        "patientSource": patient.source,
        "hasPhone": bool(patient.phone),
        "hasEmail": bool(patient.email),
        "locationId": settings.location_id,
    }

    if not patient.phone and not patient.email:
        log_error("MISSING_CONTACT_INFO", {**log_event_data, "payload": truncate(envelope)})
        raise MissingContactInfo("Phone or email is required to sync contact")

    dates = render_dates(resolve_start_time(envelope), settings.timezone)
    if dates is None:
        log_error("MISSING_APPOINTMENT_DATE", log_event_data)
        raise MissingAppointmentDate("Appointment date is required")

    body = build_contact_payload(patient, dates, settings)
    log_success("SYNC_ATTEMPT", {"contactData": body, **log_event_data})

    try:
        result = await ghl.upsert_contact(body)
    except RemoteApiError as exc:
        log_error("GHL_API_ERROR", {"status": exc.status_code, "response": exc.response_body})
        raise

    contact = as_dict(result.get("contact"))
    contact_id: Any = contact.get("id") or result.get("id")
    if not contact_id:
        raise RemoteApiError("GHL upsert response did not include a contact id", response_body=result)

    sync_result = ContactSyncResult(
        contact_id=str(contact_id),
        is_new=_is_new_contact(result),
        response=result,
        patient=patient,
    )
    log_success("SYNC_SUCCESS", {"contactId": sync_result.contact_id, "isNew": sync_result.is_new})
    return sync_result
