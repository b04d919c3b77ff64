"""
Pydantic models for data extracted from Nubimed booking webhooks.

These are read-only projections rebuilt on every request; nothing here is
persisted. Raw payload aliases (camelCase, Spanish field names, ...) are
resolved by app.services.field_extractor before these models are built.
"""

from typing import Any, List, Optional

from pydantic import BaseModel


class PatientRecord(BaseModel):
    """A patient as found in one of the supported payload locations."""

    name: str = ""
    surname: str = ""
    phone: Optional[str] = None      # normalized: "+" followed by digits
    email: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None    # ISO 3166-1 alpha-2, e.g. "ES"
    birth_date: Optional[str] = None  # YYYY-MM-DD
    nin: Optional[str] = None        # national identification number (DNI/NIE)
    sex: Optional[str] = None
    source: str = "none"             # which payload location the record came from

    @property
    def full_name(self) -> str:
        return f"{self.name} {self.surname}".strip()


class DoctorRecord(BaseModel):
    name: str = ""
    surname: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.name} {self.surname}".strip()


class BookingRecord(BaseModel):
    """The booking sub-record of a webhook, with start/end kept as received."""

    id: Optional[str] = None
    start_at: Optional[Any] = None
    end_at: Optional[Any] = None
    previous_start_at: Optional[Any] = None
    status: Optional[Any] = None
    comment: str = ""
    patients: List[PatientRecord] = []
    doctor: Optional[DoctorRecord] = None
