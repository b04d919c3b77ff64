"""
Thin async client for the GoHighLevel (LeadConnector) REST API.

Only the endpoints this integration needs are wrapped. Every call is a
single attempt: no retries and no circuit breaking, so a failure surfaces to
the caller immediately as RemoteApiError.

Usage:
    async with GHLClient(settings) as ghl:
        contact = await ghl.get_contact("abc123")

Tests pass ``transport=httpx.MockTransport(handler)`` to fake the API.
"""

import json
import logging
from typing import Any, Optional

import httpx

from app.config import GHLSettings
from app.errors import RemoteApiError
from app.services.event_log import log_error, log_warning, truncate

logger = logging.getLogger(__name__)


class GHLClient:
    def __init__(self, settings: GHLSettings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "GHLClient":
        self._client = httpx.AsyncClient(
            base_url=self.settings.api_base,
            headers=self._headers(),
            timeout=self.settings.timeout_seconds,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.settings.api_token or ''}",
            "Version": self.settings.api_version,
            "Accept": "application/json",
        }

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, json_body: Optional[dict] = None) -> dict:
        """
        Send one request and return the decoded JSON object.

        Raises:
            RemoteApiError: transport failure, non-2xx status, or a success
                            body that is not JSON.
        """
        if self._client is None:
            raise RuntimeError("GHLClient must be used as an async context manager")

        try:
            response = await self._client.request(method, path, json=json_body)
        except httpx.HTTPError as exc:
            log_error("GHL_TRANSPORT_ERROR", {"method": method, "path": path, "error": str(exc)})
            raise RemoteApiError(f"GHL request failed: {exc}") from exc

        text = response.text
        try:
            body: Any = response.json() if text.strip() else {}
        except (json.JSONDecodeError, ValueError):
            body = None

        if response.is_success:
            if body is None:
                raise RemoteApiError(
                    f"Invalid JSON response: {truncate(text)}",
                    status_code=response.status_code,
                    response_body=text,
                )
            return body if isinstance(body, dict) else {"data": body}

        message = body.get("message") if isinstance(body, dict) else None
        if isinstance(message, list):
            message = "; ".join(str(m) for m in message)
        detail = message or (json.dumps(body) if body is not None else truncate(text))
        raise RemoteApiError(
            f"GHL API error ({response.status_code}): {detail}",
            status_code=response.status_code,
            response_body=body if body is not None else text,
        )

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    async def get_contact(self, contact_id: str) -> dict:
        """GET /contacts/{id}; returns the ``contact`` object."""
        result = await self._request("GET", f"/contacts/{contact_id}")
        return result.get("contact") or result

    async def upsert_contact(self, body: dict) -> dict:
        """POST /contacts/upsert; the CRM deduplicates by phone/email."""
        return await self._request("POST", "/contacts/upsert", body)

    async def update_contact(self, contact_id: str, body: dict) -> dict:
        return await self._request("PUT", f"/contacts/{contact_id}", body)

    # ------------------------------------------------------------------
    # Calendar
    # ------------------------------------------------------------------

    async def create_appointment(self, body: dict) -> dict:
        return await self._request("POST", "/calendars/events/appointments", body)

    async def update_appointment(self, appointment_id: str, body: dict) -> dict:
        return await self._request("PUT", f"/calendars/events/appointments/{appointment_id}", body)

    async def delete_event(self, event_id: str) -> str:
        """
        DELETE /calendars/events/{id}.

        Returns "deleted", or "already_deleted" when the CRM answers 404.
        """
        try:
            await self._request("DELETE", f"/calendars/events/{event_id}")
        except RemoteApiError as exc:
            if exc.status_code == 404:
                log_warning("APPOINTMENT_NOT_FOUND", {
                    "appointmentId": event_id,
                    "message": "Appointment already deleted or not found",
                })
                return "already_deleted"
            raise
        return "deleted"


def extract_appointment_id(result: dict) -> Optional[str]:
    """Appointment id from a create/update response (shape varies by endpoint)."""
    for key in ("appointment", "event"):
        nested = result.get(key)
        if isinstance(nested, dict) and nested.get("id"):
            return str(nested["id"])
    if result.get("id"):
        return str(result["id"])
    return None
