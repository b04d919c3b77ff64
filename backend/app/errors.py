"""
Exception taxonomy for the Nubimed -> GoHighLevel webhook adapter.

Every error carries a human-readable ``message`` and a stable ``error_code``
so routers can log and report failures without string matching.

Mapping to HTTP outcomes is owned by the routers:
  MalformedPayload       -> 400
  MissingRequiredField   -> 400 on the deletion path, 200 {status: "error"} otherwise
  RemoteApiError         -> 200 {status: "error"} (never a 5xx, the source system retries those)
  ConfigurationError     -> 200 {status: "error"}
"""

from typing import Any, Optional


class WebhookError(Exception):
    """Base class for all business-level failures."""

    error_code = "WEBHOOK_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class MalformedPayload(WebhookError):
    """Raised when the inbound body cannot be parsed into an envelope."""

    error_code = "MALFORMED_PAYLOAD"


class MissingRequiredField(WebhookError):
    """Raised when a field needed to continue is absent from the payload."""

    error_code = "MISSING_REQUIRED_FIELD"


class MissingContactInfo(MissingRequiredField):
    """Neither phone nor email could be extracted for the patient."""

    error_code = "MISSING_CONTACT_INFO"


class MissingAppointmentDate(MissingRequiredField):
    """No resolvable appointment date in the booking."""

    error_code = "MISSING_APPOINTMENT_DATE"


class RemoteApiError(WebhookError):
    """Raised when the CRM answers with a non-2xx status or an unusable body."""

    error_code = "REMOTE_API_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class ConfigurationError(WebhookError):
    """Required environment configuration is missing."""

    error_code = "CONFIGURATION_ERROR"
