"""
Field extraction for Nubimed booking webhooks.

Nubimed does not send one stable schema: the same patient can live in
``data.booking.patients[0]``, ``data.patients[0]``, ``data.booking.patient``
or in flat ``patient_*`` fields at the top level, depending on the callback
type and on whatever automation relayed it. This module hides those shapes
behind a small set of functions:

  resolve_sections(envelope)  -> (data, booking) dicts used by every lookup
  extract_patient(envelope)   -> PatientRecord (first usable source wins)
  extract_booking(envelope)   -> BookingRecord
  resolve_start_time(...)     -> raw start value, or None
  render_dates(value, tz)     -> AppointmentDates in UTC and clinic-local forms

Patient sources are evaluated in this order and the first one that yields a
non-empty object is used:

  1. booking.patients[0]
  2. data.patients[0]
  3. booking.patient
  4. envelope.patient
  5. flat top-level patient_* fields
"""

import logging
import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from app.models.nubimed import BookingRecord, DoctorRecord, PatientRecord
from app.services.event_log import log_warning

logger = logging.getLogger(__name__)

DEFAULT_COUNTRY = "ES"
DEFAULT_APPOINTMENT_MINUTES = 30

# Lower-case, accent-free country names (and a few common codes) -> ISO alpha-2
COUNTRY_CODES = {
    "espana": "ES", "spain": "ES", "es": "ES",
    "mexico": "MX", "mx": "MX",
    "argentina": "AR", "ar": "AR",
    "colombia": "CO", "co": "CO",
    "chile": "CL", "cl": "CL",
    "peru": "PE", "pe": "PE",
    "venezuela": "VE", "ve": "VE",
    "ecuador": "EC", "ec": "EC",
    "guatemala": "GT", "gt": "GT",
    "cuba": "CU", "cu": "CU",
    "bolivia": "BO", "bo": "BO",
    "republica dominicana": "DO", "dominican republic": "DO", "do": "DO",
    "honduras": "HN", "hn": "HN",
    "paraguay": "PY", "py": "PY",
    "el salvador": "SV", "sv": "SV",
    "nicaragua": "NI", "ni": "NI",
    "costa rica": "CR", "cr": "CR",
    "panama": "PA", "pa": "PA",
    "uruguay": "UY", "uy": "UY",
    "puerto rico": "PR", "pr": "PR",
    "guinea ecuatorial": "GQ", "equatorial guinea": "GQ", "gq": "GQ",
    "portugal": "PT", "pt": "PT",
    "francia": "FR", "france": "FR", "fr": "FR",
    "italia": "IT", "italy": "IT", "it": "IT",
    "alemania": "DE", "germany": "DE", "de": "DE",
    "reino unido": "GB", "united kingdom": "GB", "uk": "GB", "gb": "GB",
    "estados unidos": "US", "united states": "US", "usa": "US", "us": "US",
    "andorra": "AD", "ad": "AD",
    "marruecos": "MA", "morocco": "MA", "ma": "MA",
    "brasil": "BR", "brazil": "BR", "br": "BR",
}

# Datetime layouts seen in Nubimed exports besides ISO 8601
_EXTRA_DATETIME_FORMATS = (
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
    "%d-%m-%Y %H:%M",
    "%d-%m-%Y",
)


# ---------------------------------------------------------------------------
# Generic lookups
# ---------------------------------------------------------------------------

def as_dict(value: Any) -> dict:
    """Return ``value`` if it is a dict, else an empty dict."""
    return value if isinstance(value, dict) else {}


def first_present(*values: Any) -> Any:
    """Return the first value that is not None, empty or False."""
    for value in values:
        if value is None or value is False:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        if isinstance(value, (list, dict)) and not value:
            continue
        return value
    return None


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def resolve_sections(envelope: dict) -> Tuple[dict, dict]:
    """
    Return ``(data, booking)`` for an envelope.

    ``data`` is ``envelope["data"]`` when it is a non-empty object, otherwise
    the envelope itself. ``booking`` is ``data.booking``, then
    ``envelope.appointment``, then the envelope itself (legacy flat payloads
    carry booking fields at the top level).
    """
    data = as_dict(envelope.get("data")) or envelope
    booking = (
        as_dict(data.get("booking"))
        or as_dict(envelope.get("appointment"))
        or envelope
    )
    return data, booking


def resolve_start_time(envelope: dict) -> Any:
    """Raw appointment start value, in priority order, or None."""
    data, booking = resolve_sections(envelope)
    return first_present(
        booking.get("start_at"),
        booking.get("startAt"),
        data.get("start_at"),
        data.get("startAt"),
        booking.get("date"),
        booking.get("datetime"),
        envelope.get("date"),
        envelope.get("datetime"),
        data.get("date"),
    )


def resolve_end_time(envelope: dict) -> Any:
    data, booking = resolve_sections(envelope)
    return first_present(
        booking.get("end_at"),
        booking.get("endAt"),
        data.get("end_at"),
        data.get("endAt"),
        booking.get("end_date"),
    )


def resolve_booking_id(envelope: dict) -> Optional[str]:
    data, booking = resolve_sections(envelope)
    value = first_present(
        booking.get("id"),
        data.get("booking_id"),
        envelope.get("booking_id"),
    )
    return _clean_str(value)


# ---------------------------------------------------------------------------
# Normalizers
# ---------------------------------------------------------------------------

def format_phone(phone: Any) -> Optional[str]:
    """
    Normalize a phone number to "+<digits>".

    "600 111 222"      -> "+600111222"
    "+34 (600) 111222" -> "+34600111222"
    ""/None/"abc"      -> None
    """
    if phone is None:
        return None
    digits = re.sub(r"\D", "", str(phone))
    if not digits:
        return None
    return f"+{digits}"


def _fold(text: str) -> str:
    """Lower-case and strip accents: "Perú" -> "peru"."""
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.lower().split())


def normalize_country(value: Any) -> Optional[str]:
    """
    Map a country name or code to an upper-case ISO alpha-2 code.

    Returns None for empty input. Unknown names fall back to "ES" and emit a
    COUNTRY_DEFAULTED warning.
    """
    text = _clean_str(value)
    if text is None:
        return None

    code = COUNTRY_CODES.get(_fold(text))
    if code:
        return code

    log_warning("COUNTRY_DEFAULTED", {"country": text, "defaultedTo": DEFAULT_COUNTRY})
    return DEFAULT_COUNTRY


def parse_datetime(value: Any, tz_name: str) -> Optional[datetime]:
    """
    Parse a Nubimed date/time into an aware datetime.

    Accepts ISO 8601 strings (with or without offset, "Z" included), a few
    day-first layouts, date/datetime objects, and epoch milliseconds. Naive
    values are interpreted in ``tz_name``. Returns None if unparseable.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None

    tz = ZoneInfo(tz_name)

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.debug(f"Epoch value out of range: {value!r}")
            return None
    else:
        text = str(value).strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            parsed = None
            for fmt in _EXTRA_DATETIME_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            if parsed is None:
                logger.debug(f"Unparseable date value {value!r}")
                return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def to_ghl_iso(moment: datetime) -> str:
    """UTC ISO 8601 with milliseconds and a trailing Z."""
    utc = moment.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class AppointmentDates:
    """One appointment instant rendered in every format the CRM needs."""

    moment: datetime
    iso: str            # 2025-01-10T09:00:00.000Z
    civil_date: str     # 2025-01-10 (clinic timezone)
    display: str        # 10/01/2025 a las 10:00 (clinic timezone)


def render_dates(value: Any, tz_name: str) -> Optional[AppointmentDates]:
    """Render a raw start value, or return None if it cannot be parsed."""
    moment = parse_datetime(value, tz_name)
    if moment is None:
        return None
    local = moment.astimezone(ZoneInfo(tz_name))
    return AppointmentDates(
        moment=moment,
        iso=to_ghl_iso(moment),
        civil_date=local.strftime("%Y-%m-%d"),
        display=local.strftime("%d/%m/%Y a las %H:%M"),
    )


def default_end(start: datetime) -> datetime:
    return start + timedelta(minutes=DEFAULT_APPOINTMENT_MINUTES)


def _normalize_birth_date(value: Any, tz_name: str) -> Optional[str]:
    text = _clean_str(value)
    if text is None:
        return None
    moment = parse_datetime(text, tz_name)
    if moment is None:
        return None
    return moment.astimezone(ZoneInfo(tz_name)).strftime("%Y-%m-%d")


# ---------------------------------------------------------------------------
# Patient extraction strategies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PatientSource:
    """A named location where a patient object may be found."""

    label: str
    locate: Callable[[dict, dict, dict], Any]

    def find(self, envelope: dict, data: dict, booking: dict) -> Optional[dict]:
        candidate = self.locate(envelope, data, booking)
        if isinstance(candidate, list):
            candidate = candidate[0] if candidate else None
        if isinstance(candidate, dict) and candidate:
            return candidate
        return None


def _flat_patient_fields(envelope: dict) -> dict:
    """Collect ``patient_*`` keys from the top level: patient_phone -> phone."""
    return {
        key[len("patient_"):]: value
        for key, value in envelope.items()
        if key.startswith("patient_") and value not in (None, "")
    }


PATIENT_SOURCES: List[PatientSource] = [
    PatientSource("booking.patients[0]", lambda env, data, booking: booking.get("patients")),
    PatientSource("data.patients[0]", lambda env, data, booking: data.get("patients")),
    PatientSource("booking.patient", lambda env, data, booking: booking.get("patient")),
    PatientSource("payload.patient", lambda env, data, booking: env.get("patient")),
    PatientSource("payload.patient_*", lambda env, data, booking: _flat_patient_fields(env)),
]


def locate_patient(envelope: dict) -> Tuple[dict, str]:
    """Return ``(raw_patient, source_label)``; ``({}, "none")`` when absent."""
    data, booking = resolve_sections(envelope)
    for source in PATIENT_SOURCES:
        found = source.find(envelope, data, booking)
        if found is not None:
            return found, source.label
    return {}, "none"


def build_patient(raw: dict, tz_name: str, source: str = "none") -> PatientRecord:
    """Map one raw patient object onto PatientRecord, resolving aliases."""
    return PatientRecord(
        name=_clean_str(first_present(raw.get("name"), raw.get("firstName"), raw.get("first_name"))) or "",
        surname=_clean_str(first_present(
            raw.get("surname"), raw.get("lastName"), raw.get("last_name"), raw.get("surname1"),
        )) or "",
        phone=format_phone(first_present(raw.get("phone"), raw.get("mobile"), raw.get("phone_number"))),
        email=_clean_str(raw.get("email")),
        address=_clean_str(first_present(raw.get("address"), raw.get("address1"))),
        city=_clean_str(raw.get("city")),
        province=_clean_str(first_present(raw.get("province"), raw.get("state"))),
        postal_code=_clean_str(first_present(
            raw.get("postal_code"), raw.get("postalCode"), raw.get("zip"), raw.get("cp"),
        )),
        country=normalize_country(raw.get("country")),
        birth_date=_normalize_birth_date(first_present(
            raw.get("birth_date"), raw.get("birthDate"), raw.get("date_of_birth"), raw.get("birthday"),
        ), tz_name),
        nin=_clean_str(first_present(raw.get("nin"), raw.get("dni"), raw.get("nif"))),
        sex=_clean_str(first_present(raw.get("sex"), raw.get("gender"))),
        source=source,
    )


def extract_patient(envelope: dict, tz_name: str = "Europe/Madrid") -> PatientRecord:
    """
    Resolve the patient for a webhook.

    Identity fields missing on the selected patient object fall back to flat
    envelope/booking/data fields (``patient_phone``, ``phone``, ...).
    """
    data, booking = resolve_sections(envelope)
    raw, source = locate_patient(envelope)
    patient = build_patient(raw, tz_name, source)

    if patient.phone is None:
        patient.phone = format_phone(first_present(
            envelope.get("patient_phone"), envelope.get("phone"),
            booking.get("phone"), data.get("phone"),
        ))
    if patient.email is None:
        patient.email = _clean_str(first_present(
            envelope.get("patient_email"), envelope.get("email"),
            booking.get("email"), data.get("email"),
        ))
    if not patient.name:
        patient.name = _clean_str(first_present(
            envelope.get("patient_name"), envelope.get("firstName"), booking.get("patient_name"),
        )) or ""
    if not patient.surname:
        patient.surname = _clean_str(first_present(
            envelope.get("patient_lastName"), envelope.get("lastName"), booking.get("patient_lastName"),
        )) or ""

    if source == "none":
        log_warning("NO_PATIENT_FOUND", {
            "dataKeys": list(data.keys()),
            "bookingKeys": list(booking.keys()),
        })

    return patient


def extract_doctor(envelope: dict) -> Optional[DoctorRecord]:
    data, booking = resolve_sections(envelope)
    raw = as_dict(data.get("doctor")) or as_dict(booking.get("doctor"))
    if not raw:
        return None
    return DoctorRecord(
        name=_clean_str(raw.get("name")) or "",
        surname=_clean_str(raw.get("surname")) or "",
    )


def extract_booking(
    envelope: dict,
    tz_name: str = "Europe/Madrid",
    include_patients: bool = True,
) -> BookingRecord:
    """
    Project the booking sub-record of a webhook.

    With ``include_patients=False`` the patient list is left empty, for
    callers that resolve the patient separately.
    """
    data, booking = resolve_sections(envelope)

    patients: List[PatientRecord] = []
    raw_patients = booking.get("patients")
    if include_patients and isinstance(raw_patients, list):
        patients = [
            build_patient(p, tz_name, "booking.patients")
            for p in raw_patients
            if isinstance(p, dict)
        ]

    status = booking.get("status")
    if status is None:
        status = first_present(envelope.get("status"), data.get("status"))

    return BookingRecord(
        id=resolve_booking_id(envelope),
        start_at=resolve_start_time(envelope),
        end_at=resolve_end_time(envelope),
        previous_start_at=first_present(
            booking.get("previous_start_at"),
            booking.get("previousStartAt"),
            envelope.get("previous_date"),
            data.get("previous_start_at"),
        ),
        status=status,
        comment=_clean_str(first_present(
            booking.get("comment"), data.get("comment"), booking.get("notes"), data.get("notes"),
        )) or "",
        patients=patients,
        doctor=extract_doctor(envelope),
    )
