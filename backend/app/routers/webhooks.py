"""
Nubimed webhook router.

Endpoints:
  POST /webhook/nubimed          booking lifecycle callbacks (JSON or form-encoded)
  POST /webhook/nubimed/deleted  booking deletions (requires contact_id + booking id)

Business outcomes always answer 200 with {"status": "success" | "ignored" | "error"}
so Nubimed does not retry deliveries. Only an unreadable body gets a 400.
"""

import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.config import GHLSettings, get_settings
from app.errors import MalformedPayload, RemoteApiError, WebhookError
from app.models.nubimed import PatientRecord
from app.services.appointment_sync import delete_booking_appointment, sync_appointment
from app.services.contact_sync import sync_contact
from app.services.event_filter import classify_event
from app.services.event_log import log_error, log_event, log_success, truncate
from app.services.field_extractor import as_dict, first_present, resolve_booking_id, resolve_start_time
from app.services.ghl_client import GHLClient
from app.services.payload_normalizer import FORM_CONTENT_TYPE, normalize_payload

logger = logging.getLogger(__name__)

router = APIRouter()

_IGNORED_DELETE_MESSAGES = {
    "not_correlated": "No appointment correlated to this booking",
    "contact_unreadable": "Contact could not be read from the CRM",
}


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

async def get_ghl_client(settings: GHLSettings = Depends(get_settings)) -> AsyncIterator[GHLClient]:
    """One CRM client per request, closed when the response is sent."""
    async with GHLClient(settings) as client:
        yield client


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _read_envelope(request: Request) -> dict:
    """Read the body in whatever encoding it came in and normalize it."""
    content_type = request.headers.get("content-type", "")
    if content_type.split(";")[0].strip().lower() == FORM_CONTENT_TYPE:
        form = await request.form()
        return normalize_payload(content_type, form_fields=form.multi_items())
    body = await request.body()
    return normalize_payload(content_type, body=body)


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"status": "error", "message": message})


def _client_error_text(exc: Exception, settings: GHLSettings) -> str:
    return str(exc) if settings.debug_errors else "Internal error"


async def _sync_calendar(
    envelope: dict,
    contact_id: str,
    ghl: GHLClient,
    settings: GHLSettings,
    patient: Optional[PatientRecord] = None,
) -> Optional[dict]:
    """
    Calendar sub-flow of the main webhook.

    Runs only when the booking has both an id and a start time. Never raises:
    a calendar failure must not fail the contact sync that already happened.
    """
    if not resolve_booking_id(envelope) or not resolve_start_time(envelope):
        return None

    try:
        result = await sync_appointment(envelope, contact_id, ghl, settings, patient=patient)
    except Exception as exc:
        log_error("CALENDAR_SYNC_ERROR", {"contactId": contact_id, "error": str(exc)})
        logger.debug("Calendar sync failed", exc_info=True)
        return {"status": "error", "error": _client_error_text(exc, settings)}

    return {
        "status": "success",
        "appointmentId": result.appointment_id,
        "action": result.action,
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/nubimed")
async def receive_nubimed_webhook(
    request: Request,
    settings: GHLSettings = Depends(get_settings),
    ghl: GHLClient = Depends(get_ghl_client),
):
    """
    Booking lifecycle webhook.

    normalize -> classify (may answer "ignored") -> contact upsert ->
    calendar sync (optional, isolated).
    """
    timestamp = datetime.now(timezone.utc).isoformat()

    try:
        envelope = await _read_envelope(request)
    except MalformedPayload as exc:
        return _bad_request(exc.message)

    log_event("WEBHOOK_RECEIVED", {
        "timestamp": timestamp,
        "contentType": request.headers.get("content-type", ""),
        "ip": request.client.host if request.client else None,
        "payload": truncate(envelope),
    })

    try:
        decision = classify_event(envelope, settings.completion_status_codes)
        if not decision:
            log_event("WEBHOOK_IGNORED", {"timestamp": timestamp, "reason": decision.reason})
            return {
                "status": "ignored",
                "message": "Webhook received but ignored based on filtering rules",
                "reason": decision.reason,
            }

        log_event("WEBHOOK_PROCESSING", {"timestamp": timestamp, "eventName": decision.event_name})

        contact = await sync_contact(envelope, ghl, settings)
        response = {
            "status": "success",
            "message": "Webhook processed successfully",
            "contactId": contact.contact_id,
            "isNew": contact.is_new,
        }

        appointment = await _sync_calendar(
            envelope, contact.contact_id, ghl, settings, patient=contact.patient,
        )
        if appointment is not None:
            response["appointment"] = appointment

        log_success("WEBHOOK_PROCESSED", {"timestamp": timestamp, "result": response})
        return response

    except Exception as exc:
        error_code = exc.error_code if isinstance(exc, WebhookError) else "UNEXPECTED"
        log_error("WEBHOOK_ERROR", {
            "timestamp": timestamp,
            "errorCode": error_code,
            "error": str(exc),
            "payload": truncate(envelope),
        })
        if not isinstance(exc, WebhookError):
            logger.exception("Unexpected error while processing Nubimed webhook")
        return {
            "status": "error",
            "message": "Webhook received but error occurred",
            "error": _client_error_text(exc, settings),
        }


@router.post("/nubimed/deleted")
async def receive_nubimed_deletion(
    request: Request,
    settings: GHLSettings = Depends(get_settings),
    ghl: GHLClient = Depends(get_ghl_client),
):
    """Delete the calendar event for a deleted booking and drop its correlation."""
    try:
        envelope = await _read_envelope(request)
    except MalformedPayload as exc:
        return _bad_request(exc.message)

    data = as_dict(envelope.get("data"))
    contact_id = first_present(
        envelope.get("contact_id"), envelope.get("contactId"),
        data.get("contact_id"), data.get("contactId"),
    )
    booking_id = first_present(
        envelope.get("deleted_booking_id"), envelope.get("booking_id"),
        data.get("deleted_booking_id"), data.get("booking_id"),
    )

    if not contact_id:
        return _bad_request("contact_id is required")
    if not booking_id:
        return _bad_request("deleted_booking_id or booking_id is required")

    contact_id = str(contact_id).strip()
    booking_id = str(booking_id).strip()
    log_event("DELETION_RECEIVED", {"contactId": contact_id, "nubimedBookingId": booking_id})

    try:
        result = await delete_booking_appointment(ghl, settings, contact_id, booking_id)
    except RemoteApiError as exc:
        return {
            "status": "error",
            "message": "Appointment could not be deleted",
            "remoteStatus": exc.status_code,
            "error": _client_error_text(exc, settings),
        }
    except WebhookError as exc:
        log_error("DELETION_ERROR", {"errorCode": exc.error_code, "error": exc.message})
        return {
            "status": "error",
            "message": "Webhook received but error occurred",
            "error": _client_error_text(exc, settings),
        }

    if result.action == "ignored":
        response = {
            "status": "ignored",
            "message": _IGNORED_DELETE_MESSAGES.get(result.reason, "Nothing to delete"),
            "reason": result.reason,
            "bookingId": booking_id,
        }
        if result.remote_status is not None:
            response["remoteStatus"] = result.remote_status
        return response

    return {
        "status": "success",
        "action": result.action,
        "appointmentId": result.appointment_id,
        "bookingId": booking_id,
        "correlationUpdated": result.correlation_updated,
    }
