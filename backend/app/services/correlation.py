"""
Booking -> appointment correlation table.

The CRM has no native place to remember which calendar event belongs to
which Nubimed booking, so the mapping lives on the contact itself, in two
custom fields holding parallel comma-separated lists:

    nubimed_booking_id:  "B1,B7,B9"
    appointment_ids:     "evtA,evtB,evtC"

Position i of one list pairs with position i of the other. In memory the
table is an ordered list of ``(booking_id, appointment_id)`` pairs, so the
two lists cannot drift apart; the two-string form only exists at the CRM
boundary (``from_contact`` / ``to_custom_fields``).
"""

import json
import logging
from typing import Iterable, List, Optional, Tuple

from app.config import CorrelationFields

logger = logging.getLogger(__name__)


def parse_id_list(value: object) -> List[str]:
    """
    Parse a stored id list.

    Accepts the comma-separated format and the legacy JSON-array format
    ('["a","b"]'). Blank items are dropped; anything else yields [].
    """
    if isinstance(value, list):
        items = value
    elif isinstance(value, str) and value.strip():
        items = None
        try:
            parsed = json.loads(value)
            if isinstance(parsed, list):
                items = parsed
        except ValueError:
            pass
        if items is None:
            items = value.split(",")
    else:
        return []

    return [str(item).strip() for item in items if item is not None and str(item).strip()]


def format_id_list(ids: Iterable[str]) -> str:
    return ",".join(i for i in ids if i and i.strip())


def _field_value(field: dict) -> object:
    for key in ("value", "fieldValue", "field_value"):
        if key in field:
            return field[key]
    return None


class CorrelationTable:
    """Ordered, duplicate-free mapping of booking ids to appointment ids."""

    def __init__(self, pairs: Optional[Iterable[Tuple[str, str]]] = None):
        self._pairs: List[Tuple[str, str]] = []
        for booking_id, appointment_id in pairs or ():
            self.add(booking_id, appointment_id)

    # -- construction -------------------------------------------------------

    @classmethod
    def from_lists(cls, booking_ids: Iterable[str], appointment_ids: Iterable[str]) -> "CorrelationTable":
        bookings = list(booking_ids)
        appointments = list(appointment_ids)
        if len(bookings) != len(appointments):
            logger.warning(
                f"Correlation lists differ in length ({len(bookings)} bookings, "
                f"{len(appointments)} appointments); unpaired entries are dropped"
            )
        return cls(zip(bookings, appointments))

    @classmethod
    def from_field_values(cls, booking_ids_value: object, appointment_ids_value: object) -> "CorrelationTable":
        return cls.from_lists(parse_id_list(booking_ids_value), parse_id_list(appointment_ids_value))

    @classmethod
    def from_contact(cls, contact: dict, fields: CorrelationFields) -> "CorrelationTable":
        """Read the table from a CRM contact's ``customFields`` list."""
        booking_value = None
        appointment_value = None
        for field in contact.get("customFields") or []:
            if not isinstance(field, dict):
                continue
            if field.get("id") == fields.booking_ids_id or field.get("fieldKey") == fields.booking_ids_key:
                booking_value = _field_value(field)
            elif field.get("id") == fields.appointment_ids_id or field.get("fieldKey") == fields.appointment_ids_key:
                appointment_value = _field_value(field)
        return cls.from_field_values(booking_value, appointment_value)

    # -- queries ------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._pairs)

    def __contains__(self, booking_id: object) -> bool:
        return self.index_of(str(booking_id)) is not None

    def __iter__(self):
        return iter(self._pairs)

    def index_of(self, booking_id: str) -> Optional[int]:
        for index, (stored, _) in enumerate(self._pairs):
            if stored == booking_id:
                return index
        return None

    def find(self, booking_id: object) -> Optional[str]:
        """Appointment id correlated to ``booking_id``, or None."""
        index = self.index_of(str(booking_id))
        if index is None:
            return None
        return self._pairs[index][1]

    @property
    def booking_ids(self) -> List[str]:
        return [b for b, _ in self._pairs]

    @property
    def appointment_ids(self) -> List[str]:
        return [a for _, a in self._pairs]

    # -- mutations ----------------------------------------------------------

    def add(self, booking_id: object, appointment_id: object) -> bool:
        """
        Append a pair unless the booking id is already known.

        Returns True if the table changed. An existing booking id is never
        re-pointed, even to a different appointment id.
        """
        booking_key = str(booking_id).strip()
        appointment_key = str(appointment_id).strip()
        if not booking_key or not appointment_key:
            raise ValueError("booking_id and appointment_id must be non-empty")
        if booking_key in self:
            return False
        self._pairs.append((booking_key, appointment_key))
        return True

    def remove(self, booking_id: object) -> Optional[str]:
        """Drop the pair for ``booking_id``; return its appointment id, if any."""
        index = self.index_of(str(booking_id))
        if index is None:
            return None
        _, appointment_id = self._pairs.pop(index)
        return appointment_id

    # -- serialization ------------------------------------------------------

    def to_field_values(self) -> Tuple[str, str]:
        """``(booking_ids_csv, appointment_ids_csv)``"""
        return format_id_list(self.booking_ids), format_id_list(self.appointment_ids)

    def to_custom_fields(self, fields: CorrelationFields) -> List[dict]:
        """Custom-field list for a full rewrite via PUT /contacts/{id}."""
        booking_csv, appointment_csv = self.to_field_values()
        return [
            {"id": fields.appointment_ids_id, "field_value": appointment_csv},
            {"id": fields.booking_ids_id, "field_value": booking_csv},
        ]

    def __repr__(self) -> str:
        return f"CorrelationTable({self._pairs!r})"
