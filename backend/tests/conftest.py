"""
Shared fixtures: an in-memory stand-in for the GHL REST API.

FakeGHL is plugged into GHLClient through httpx.MockTransport, so the real
client code (headers, status handling, JSON decoding) runs in every test
without any network access.
"""

import json
import os
from typing import Optional

import httpx
import pytest

# Set before app.config loads .env; load_dotenv never overrides existing values
os.environ.setdefault("GHL_API_TOKEN", "test-token")
os.environ.setdefault("GHL_LOCATION_ID", "test-location")

from app.config import CorrelationFields, GHLSettings
from app.services.correlation import CorrelationTable
from app.services.ghl_client import GHLClient

FIELDS = CorrelationFields()


class FakeGHL:
    """Records every request and keeps contacts/appointments in dicts."""

    def __init__(self):
        self.contacts = {}
        self.calls = []
        self.failures = {}
        self.created = 0
        self.upsert_contact_id = "C1"

    # -- setup --------------------------------------------------------------

    def seed_contact(self, contact_id: str, booking_ids: str = "", appointment_ids: str = "") -> None:
        self.contacts[contact_id] = {
            "id": contact_id,
            "customFields": [
                {"id": FIELDS.booking_ids_id, "value": booking_ids},
                {"id": FIELDS.appointment_ids_id, "value": appointment_ids},
            ],
        }

    def fail(self, method: str, path: str, status: int = 500, body: Optional[dict] = None) -> None:
        """Answer ``method path`` with an error from now on."""
        self.failures[(method, path)] = (status, body or {"message": "Simulated failure"})

    # -- inspection ---------------------------------------------------------

    def correlation(self, contact_id: str) -> CorrelationTable:
        return CorrelationTable.from_contact(self.contacts[contact_id], FIELDS)

    def calls_to(self, method: str, path_prefix: str = "") -> list:
        return [c for c in self.calls if c[0] == method and c[1].startswith(path_prefix)]

    def client(self, settings: GHLSettings) -> GHLClient:
        return GHLClient(settings, transport=httpx.MockTransport(self.handler))

    # -- transport ----------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.calls.append((method, path, body))

        if (method, path) in self.failures:
            status, error_body = self.failures[(method, path)]
            return httpx.Response(status, json=error_body)

        if path == "/contacts/upsert" and method == "POST":
            return self._upsert(body)
        if path.startswith("/contacts/"):
            contact_id = path.rsplit("/", 1)[-1]
            if method == "GET":
                return self._get_contact(contact_id)
            if method == "PUT":
                return self._update_contact(contact_id, body)
        if path == "/calendars/events/appointments" and method == "POST":
            self.created += 1
            return httpx.Response(201, json={"id": f"evt{self.created}", "calendarId": body["calendarId"]})
        if path.startswith("/calendars/events/appointments/") and method == "PUT":
            return httpx.Response(200, json={"id": path.rsplit("/", 1)[-1]})
        if path.startswith("/calendars/events/") and method == "DELETE":
            return httpx.Response(200, json={"succeded": True})

        return httpx.Response(404, json={"message": f"No route for {method} {path}"})

    def _get_contact(self, contact_id: str) -> httpx.Response:
        contact = self.contacts.get(contact_id)
        if contact is None:
            return httpx.Response(400, json={"message": "Contact not found"})
        return httpx.Response(200, json={"contact": contact})

    def _upsert(self, body: dict) -> httpx.Response:
        contact_id = self.upsert_contact_id
        is_new = contact_id not in self.contacts
        contact = self.contacts.setdefault(contact_id, {"id": contact_id, "customFields": []})
        contact.update({k: v for k, v in body.items() if k != "customFields"})
        return httpx.Response(200 if not is_new else 201, json={"new": is_new, "contact": contact})

    def _update_contact(self, contact_id: str, body: dict) -> httpx.Response:
        contact = self.contacts.setdefault(contact_id, {"id": contact_id, "customFields": []})
        by_id = {f["id"]: f for f in contact["customFields"]}
        for incoming in body.get("customFields", []):
            by_id[incoming["id"]] = {"id": incoming["id"], "value": incoming["field_value"]}
        contact["customFields"] = list(by_id.values())
        return httpx.Response(200, json={"succeded": True, "contact": contact})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> GHLSettings:
    return GHLSettings(api_base="https://ghl.test", api_token="tok", location_id="loc1")


@pytest.fixture
def fake_ghl() -> FakeGHL:
    return FakeGHL()


def booking_envelope(
    booking_id: str = "B1",
    start_at: str = "2025-01-10T09:00:00Z",
    name: str = "new_booking",
    **patient,
) -> dict:
    """The canonical new_booking callback used across the sync tests."""
    patient_record = {"name": "Ana", "surname": "Ruiz", "phone": "600111222"}
    patient_record.update(patient)
    booking = {"id": booking_id, "patients": [patient_record]}
    if start_at is not None:
        booking["start_at"] = start_at
    return {"name": name, "data": {"booking": booking}}
