"""
Runtime configuration for the GoHighLevel (GHL) side of the integration.

All values come from the environment (a local .env file is loaded first).
The settings object is immutable and built once; handlers receive it through
``get_settings`` so tests can swap it with ``app.dependency_overrides``.

Environment variables
---------------------
GHL_API_BASE                     CRM base URL (default: https://services.leadconnectorhq.com)
GHL_API_TOKEN                    Bearer token (required at request time)
GHL_LOCATION_ID                  Sub-account location id (required at request time)
GHL_CALENDAR_ID                  Calendar that receives appointments
GHL_ASSIGNED_USER_ID             User assigned to created appointments
GHL_HTTP_TIMEOUT                 Per-request timeout in seconds (default: 15)
NUBIMED_TIMEZONE                 Clinic timezone used to render dates (default: Europe/Madrid)
NUBIMED_COMPLETION_STATUS_CODES  Comma-separated numeric booking statuses that mean
                                 "visit completed" (default: none)
APP_ENV / NODE_ENV               "development" echoes raw error messages to clients
"""

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import FrozenSet, Optional, Tuple

from dotenv import load_dotenv

from app.errors import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://services.leadconnectorhq.com"
DEFAULT_CALENDAR_ID = "ZRPJchKgGQpwzROdPLuH"
DEFAULT_ASSIGNED_USER_ID = "BXixxlTY2nvR9n5BZUp8"
API_VERSION = "2021-07-28"


@dataclass(frozen=True)
class CorrelationFields:
    """Contact custom fields that hold the booking -> appointment index."""

    appointment_ids_id: str = "sDiKLOU2RCLGSGubvImI"
    appointment_ids_key: str = "contact.appointment_ids"
    booking_ids_id: str = "cp4F0qVNGNclyphsr5jk"
    booking_ids_key: str = "contact.nubimed_booking_id"


@dataclass(frozen=True)
class ContactFieldKeys:
    """Custom-field keys written on every contact upsert."""

    appointment_date: str = "fecha_ultima_cita"
    appointment_date_text: str = "fecha_ultima_cita_t"
    national_id: str = "dni"
    sex: str = "sexo"


@dataclass(frozen=True)
class GHLSettings:
    api_base: str = DEFAULT_API_BASE
    api_token: Optional[str] = None
    location_id: Optional[str] = None
    calendar_id: str = DEFAULT_CALENDAR_ID
    assigned_user_id: str = DEFAULT_ASSIGNED_USER_ID
    api_version: str = API_VERSION
    timeout_seconds: float = 15.0
    timezone: str = "Europe/Madrid"
    completion_status_codes: FrozenSet[int] = frozenset()
    contact_source: str = "Nubimed"
    contact_tags: Tuple[str, ...] = ("nubimed contact",)
    correlation: CorrelationFields = field(default_factory=CorrelationFields)
    contact_fields: ContactFieldKeys = field(default_factory=ContactFieldKeys)
    debug_errors: bool = False

    def require_credentials(self) -> None:
        """Raise ConfigurationError unless token and location id are set."""
        if not self.api_token:
            raise ConfigurationError("GHL_API_TOKEN environment variable is required")
        if not self.location_id:
            raise ConfigurationError("GHL_LOCATION_ID environment variable is required")


def _parse_status_codes(raw: str) -> FrozenSet[int]:
    codes = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            codes.add(int(part))
        except ValueError:
            logger.warning(f"Ignoring non-numeric completion status code {part!r}")
    return frozenset(codes)


def _parse_timeout(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid GHL_HTTP_TIMEOUT {raw!r}; using 15 seconds")
        return 15.0


def load_settings() -> GHLSettings:
    """Build settings from the current environment."""
    env_name = os.getenv("APP_ENV") or os.getenv("NODE_ENV") or ""
    return GHLSettings(
        api_base=(os.getenv("GHL_API_BASE") or DEFAULT_API_BASE).rstrip("/"),
        api_token=os.getenv("GHL_API_TOKEN") or None,
        location_id=os.getenv("GHL_LOCATION_ID") or None,
        calendar_id=os.getenv("GHL_CALENDAR_ID") or DEFAULT_CALENDAR_ID,
        assigned_user_id=os.getenv("GHL_ASSIGNED_USER_ID") or DEFAULT_ASSIGNED_USER_ID,
        timeout_seconds=_parse_timeout(os.getenv("GHL_HTTP_TIMEOUT", "15")),
        timezone=os.getenv("NUBIMED_TIMEZONE") or "Europe/Madrid",
        completion_status_codes=_parse_status_codes(
            os.getenv("NUBIMED_COMPLETION_STATUS_CODES", "")
        ),
        debug_errors=env_name.strip().lower() == "development",
    )


@lru_cache
def get_settings() -> GHLSettings:
    """Process-wide settings, loaded on first use."""
    return load_settings()
