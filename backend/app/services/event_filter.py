"""
Event classifier: decides whether a Nubimed callback should reach the CRM.

Nubimed fires the same webhook URL for every callback kind (new bookings,
reschedules, attendance, invoices, treatment plans, patient edits, ...).
Only booking creations and date/time changes are worth propagating; a visit
being marked as attended must not re-trigger the CRM reminder workflows.

Rules are evaluated in a fixed order and the first one that decides wins:

  1. Denylisted callback names (invoices, budgets, completed visits, ...) -> reject
  2. Patient-only callbacks without booking data                          -> reject
  3. Name patterns: new_booking, new_or_updated, created, attended,
     completed, updated/modified
  4. Numeric booking status (5 needs a start time, 4 always passes,
     configured completion codes need a start time)
  5. Legacy generic event_type payloads (created/updated with changes,
     previous_status/previous_date comparison)
  6. Any booking start time -> accept; no booking data at all -> reject
  7. Anything else -> accept (unclassifiable events are processed)
"""

import logging
from dataclasses import dataclass
from typing import Any, FrozenSet, Optional

from app.services.field_extractor import as_dict, first_present, resolve_sections

logger = logging.getLogger(__name__)

# Callback kinds that never describe a booking change (substring match, lower-case)
NON_BOOKING_EVENTS = (
    "cita_completada",
    "cita_eliminada",
    "booking_completed",
    "booking_deleted",
    "nueva_factura",
    "new_invoice",
    "tratamiento_completado",
    "treatment_completed",
    "paciente_creado_actualizado",
    "patient_created_updated",
    "new_or_updated_patient",
    "presupuesto_creado_actualizado",
    "budget_created_updated",
)

# Booking status labels meaning the visit already happened (substring match)
COMPLETION_STATUSES = (
    "asiste",
    "completada",
    "completed",
    "attended",
    "asistida",
    "finalizada",
)

STATUS_PENDING_CHANGE = 5
STATUS_CONFIRMED = 4


@dataclass(frozen=True)
class FilterDecision:
    process: bool
    reason: str
    event_name: Optional[str] = None

    def __bool__(self) -> bool:
        return self.process


def _accept(reason: str, event_name: Optional[str]) -> FilterDecision:
    logger.info(f"Processing: {reason} ({event_name or 'no event name'})")
    return FilterDecision(True, reason, event_name)


def _reject(reason: str, event_name: Optional[str]) -> FilterDecision:
    logger.info(f"Ignoring: {reason} ({event_name or 'no event name'})")
    return FilterDecision(False, reason, event_name)


# ---------------------------------------------------------------------------
# Status predicates
# ---------------------------------------------------------------------------

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_completion_status(status: Any) -> bool:
    """True if the stringified status contains a completion label."""
    if status is None or status == "" or status is False or status == 0:
        return False
    status_lower = str(status).lower()
    return any(label in status_lower for label in COMPLETION_STATUSES)


def is_completion_status_code(status: Any, completion_codes: FrozenSet[int] = frozenset()) -> bool:
    """True if a numeric status is one of the configured completion codes."""
    if not _is_number(status):
        return False
    return status in completion_codes


# ---------------------------------------------------------------------------
# Envelope lookups
# ---------------------------------------------------------------------------

def resolve_event_name(envelope: dict) -> Any:
    data, booking = resolve_sections(envelope)
    return first_present(
        envelope.get("name"),
        booking.get("name"),
        data.get("name"),
        envelope.get("event_type"),
        envelope.get("event"),
        envelope.get("action"),
    )


def resolve_status(envelope: dict) -> Any:
    """Booking-level status if present (even 0), else top-level, else data-level."""
    data, booking = resolve_sections(envelope)
    if booking.get("status") is not None:
        return booking["status"]
    return first_present(envelope.get("status"), data.get("status"))


def has_booking_data(booking: dict) -> bool:
    return bool(first_present(
        booking.get("id"), booking.get("start_at"), booking.get("startAt"), booking.get("date"),
    ))


# ---------------------------------------------------------------------------
# Rule groups
# ---------------------------------------------------------------------------

def _classify_by_name(
    envelope: dict,
    event_lower: str,
    event_name: str,
    status: Any,
    completion_codes: FrozenSet[int],
) -> Optional[FilterDecision]:
    """Name-pattern rules. Returns None when no pattern decides."""
    data, booking = resolve_sections(envelope)
    is_done = is_completion_status(status) or is_completion_status_code(status, completion_codes)

    if "new_booking" in event_lower:
        return _accept("new booking event, a creation not an attendance", event_name)

    if "new_or_updated" in event_lower:
        start_at = first_present(
            booking.get("start_at"), booking.get("startAt"), data.get("start_at"), data.get("startAt"),
        )
        if start_at:
            return _accept("new_or_updated booking with start time", event_name)
        if is_completion_status_code(status, completion_codes):
            return _reject(f"new_or_updated with completion status {status} and no date", event_name)

    if "created" in event_lower:
        return _accept("booking created", event_name)

    if ("attended" in event_lower or "asiste" in event_lower) and "new" not in event_lower:
        if is_done:
            return _reject(f"attendance event with status {status}", event_name)

    if (
        "completed" in event_lower
        and "new" not in event_lower
        and "booking_created" not in event_lower
    ):
        if is_done:
            return _reject(f"status changed to completed ({status})", event_name)

    if "updated" in event_lower or "modified" in event_lower:
        start_at = first_present(booking.get("start_at"), booking.get("startAt"), booking.get("date"))
        previous_start_at = first_present(
            booking.get("previous_start_at"),
            booking.get("previousStartAt"),
            envelope.get("previous_date"),
            data.get("previous_start_at"),
        )
        if previous_start_at and start_at and previous_start_at != start_at:
            return _accept("appointment date/time changed", event_name)
        if is_done:
            return _reject(f"only status changed to completion ({status})", event_name)

    return None


def _classify_by_status_code(
    envelope: dict,
    event_lower: Optional[str],
    event_name: Optional[str],
    status: Any,
    completion_codes: FrozenSet[int],
) -> Optional[FilterDecision]:
    """Numeric status rules. Returns None for non-numeric or unknown codes."""
    if not _is_number(status):
        return None

    data, booking = resolve_sections(envelope)
    start_at = first_present(
        booking.get("start_at"), booking.get("startAt"), data.get("start_at"), data.get("startAt"),
    )

    if status == STATUS_PENDING_CHANGE:
        if start_at:
            return _accept("status 5 with start time", event_name)
        return _reject("status 5 without start time, likely a status-only change", event_name)

    if status == STATUS_CONFIRMED:
        return _accept("status 4, confirmed/scheduled booking", event_name)

    if is_completion_status_code(status, completion_codes):
        if event_lower and "new_booking" in event_lower:
            return _accept(f"new booking with status {status}", event_name)
        if start_at:
            return _accept(f"completion status {status} with start time", event_name)
        return _reject(f"completion status code {status} without a valid date", event_name)

    return None


def _classify_legacy_event_type(envelope: dict, event_name: Optional[str]) -> Optional[FilterDecision]:
    """Generic created/updated payloads that predate Nubimed's named callbacks."""
    event_type = first_present(envelope.get("event_type"), envelope.get("event"), envelope.get("action"))

    if event_type in ("created", "appointment.created"):
        return _accept("new appointment created", event_name)

    if event_type not in ("updated", "appointment.updated"):
        return None

    appointment = as_dict(envelope.get("appointment")) or envelope
    changes = as_dict(envelope.get("changes"))

    if changes:
        if changes.get("date") or changes.get("time") or changes.get("datetime"):
            return _accept("date/time changed", event_name)
        if changes.get("status") and not changes.get("date") and not changes.get("time"):
            current = first_present(appointment.get("status"), envelope.get("status"))
            if is_completion_status(current):
                return _reject("status changed to completion, date unchanged", event_name)

    if (
        envelope.get("previous_status")
        or envelope.get("previous_date")
        or appointment.get("previous_date")
    ):
        current_date = first_present(
            appointment.get("date"), appointment.get("datetime"), envelope.get("date"),
        )
        previous_date = first_present(appointment.get("previous_date"), envelope.get("previous_date"))
        current_status = first_present(appointment.get("status"), envelope.get("status"))
        previous_status = envelope.get("previous_status")

        if previous_date and current_date and previous_date != current_date:
            return _accept("date changed", event_name)

        if previous_status and current_status and previous_status != current_status:
            if not previous_date or previous_date == current_date:
                if is_completion_status(current_status):
                    return _reject("only status changed to completion, date unchanged", event_name)

    return None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def classify_event(envelope: dict, completion_codes: FrozenSet[int] = frozenset()) -> FilterDecision:
    """
    Classify a canonical envelope.

    Args:
        envelope:          Output of payload_normalizer.normalize_payload.
        completion_codes:  Numeric booking statuses that mean "visit completed".

    Returns:
        FilterDecision; truthy when the event should be propagated.
    """
    data, booking = resolve_sections(envelope)
    raw_name = resolve_event_name(envelope)
    event_name = raw_name if isinstance(raw_name, str) else None
    event_lower = event_name.lower() if event_name else None

    if event_lower:
        for token in NON_BOOKING_EVENTS:
            if token in event_lower:
                return _reject(f"non-booking callback event ({token})", event_name)

        if "patient" in event_lower and "booking" not in event_lower:
            if not has_booking_data(booking):
                return _reject("patient-only event without booking data", event_name)
            logger.info(f"Patient event carries booking data ({event_name})")

    status = resolve_status(envelope)

    if event_lower:
        decision = _classify_by_name(envelope, event_lower, event_name, status, completion_codes)
        if decision is not None:
            return decision

    decision = _classify_by_status_code(envelope, event_lower, event_name, status, completion_codes)
    if decision is not None:
        return decision

    decision = _classify_legacy_event_type(envelope, event_name)
    if decision is not None:
        return decision

    if first_present(booking.get("start_at"), booking.get("startAt"), booking.get("date")):
        if event_lower and ("new" in event_lower or "created" in event_lower):
            return _accept("new booking detected with date", event_name)
        return _accept("booking data found, processing by default", event_name)

    if not has_booking_data(booking):
        return _reject("no booking data found, not a booking event", event_name)

    return _accept("cannot determine event type, processing by default", event_name)


def should_process_webhook(envelope: dict, completion_codes: FrozenSet[int] = frozenset()) -> bool:
    return classify_event(envelope, completion_codes).process
