"""
Structured event log.

Every notable step of webhook handling is recorded as a single JSON line
``{"event": <TAG>, "level": <LEVEL>, "data": {...}}`` written through the
standard logging module, so the output can be grepped by tag in the hosting
provider's log viewer.
"""

import json
import logging
from typing import Any, Optional

logger = logging.getLogger("app.events")

# Raw bodies and payload dumps are clipped to keep log lines bounded
MAX_RAW_LENGTH = 500


def truncate(value: Any, limit: int = MAX_RAW_LENGTH) -> str:
    """Return ``value`` as text clipped to ``limit`` characters."""
    if isinstance(value, bytes):
        text = value.decode("utf-8", errors="replace")
    elif isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, default=str, ensure_ascii=False)
    return text[:limit]


def _emit(level: int, label: str, event: str, data: Optional[dict]) -> None:
    record = {"event": event, "level": label, "data": data or {}}
    logger.log(level, json.dumps(record, default=str, ensure_ascii=False))


def log_event(event: str, data: Optional[dict] = None) -> None:
    _emit(logging.INFO, "INFO", event, data)


def log_success(event: str, data: Optional[dict] = None) -> None:
    _emit(logging.INFO, "SUCCESS", event, data)


def log_warning(event: str, data: Optional[dict] = None) -> None:
    _emit(logging.WARNING, "WARNING", event, data)


def log_error(event: str, data: Optional[dict] = None) -> None:
    _emit(logging.ERROR, "ERROR", event, data)
