"""
Inbound payload normalizer.

Nubimed (and the automation tools sitting in front of it) deliver the same
booking notification in several encodings:

  application/json
      {"name": "new_booking", "data": {"booking": {...}}}
      Sometimes the body reaches us unparsed (bytes or str) and must be
      decoded here.

  application/x-www-form-urlencoded
      name=new_booking&data=<JSON string>
      or bracket-encoded fields: data[booking][id]=B1&data[booking][start_at]=...

Every shape is reduced to one canonical envelope ``{"name": ..., "data": {...}}``
before any business logic runs. Only this module knows about transport
encodings.
"""

import json
import logging
import re
from typing import Any, Iterable, Mapping, Optional, Tuple, Union

from app.errors import MalformedPayload
from app.services.event_log import log_error, log_event, truncate

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
JSON_CONTENT_TYPE = "application/json"

_BRACKET_KEY_RE = re.compile(r"^([^\[\]]+)((?:\[[^\[\]]*\])+)$")

# A parsed form: a mapping, or (key, value) pairs when keys may repeat
FormFields = Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]


# ---------------------------------------------------------------------------
# Form-encoded bodies
# ---------------------------------------------------------------------------

def _listify(value: Any) -> Any:
    """Turn dicts keyed only by indices ("0", "1", ...) into lists, ordered by index."""
    if not isinstance(value, dict):
        return value
    value = {key: _listify(child) for key, child in value.items()}
    if value and all(key.isdigit() for key in value):
        return [value[key] for key in sorted(value, key=int)]
    return value


def _unflatten_form(fields: FormFields) -> dict:
    """
    Expand bracket-notation keys into nested dicts and lists.

    ``{"data[booking][id]": "B1", "name": "x"}`` -> ``{"data": {"booking": {"id": "B1"}}, "name": "x"}``
    ``data[booking][patients][0][phone]=...``   -> ``{"patients": [{"phone": ...}]}``
    ``tags[]=a&tags[]=b``                       -> ``{"tags": ["a", "b"]}``

    Accepts a mapping or a sequence of (key, value) pairs, so repeated ``[]``
    keys survive. Plain keys are copied as-is. A bracket key that collides
    with a plain string value keeps the plain value.
    """
    items = fields.items() if isinstance(fields, Mapping) else fields
    result: dict = {}
    for key, value in items:
        match = _BRACKET_KEY_RE.match(key)
        if not match:
            result[key] = value
            continue

        parts = [match.group(1)] + re.findall(r"\[([^\[\]]*)\]", match.group(2))
        node = result
        for part in parts[:-1]:
            if part == "":
                part = str(len(node))
            child = node.get(part)
            if not isinstance(child, dict):
                if child is not None:
                    break
                child = {}
                node[part] = child
            node = child
        else:
            last = parts[-1] if parts[-1] != "" else str(len(node))
            node[last] = value

    return {key: _listify(value) for key, value in result.items()}


def normalize_form(fields: FormFields) -> dict:
    """
    Canonicalize a form-encoded webhook.

    - ``data`` is a JSON string  -> {"name": name or data.name, "data": parsed}
    - ``data`` is not JSON       -> {"name": name, "data": <raw string>}
    - ``data`` already an object -> {"name": name, "data": data}
    - no ``data`` field          -> the form fields unchanged
    """
    payload = _unflatten_form(fields)
    log_event("FORM_ENCODED_RECEIVED", {
        "formFields": list(payload.keys()),
        "samplePayload": truncate(payload),
    })

    if "data" not in payload or payload.get("data") in (None, ""):
        log_event("FORM_DATA_NO_DATA_FIELD", {"payloadKeys": list(payload.keys())})
        return payload

    raw_data = payload["data"]
    top_level_name = payload.get("name") or None

    if isinstance(raw_data, str):
        try:
            parsed = json.loads(raw_data)
        except ValueError:
            logger.debug("Form 'data' field is not JSON; keeping raw string")
            return {"name": top_level_name, "data": raw_data}

        parsed_name = parsed.get("name") if isinstance(parsed, dict) else None
        return {"name": top_level_name or parsed_name, "data": parsed}

    return {"name": top_level_name, "data": raw_data}


# ---------------------------------------------------------------------------
# JSON bodies
# ---------------------------------------------------------------------------

def normalize_json(body: Union[bytes, str, dict, None]) -> Any:
    """
    Decode a JSON body that bypassed the framework parser.

    Raises MalformedPayload("Invalid JSON format") when the text is not JSON.
    Already-decoded objects are returned unchanged.
    """
    if isinstance(body, (bytes, bytearray)):
        body = bytes(body).decode("utf-8", errors="replace")

    if not isinstance(body, str):
        return body

    try:
        return json.loads(body)
    except ValueError as exc:
        log_error("JSON_PARSE_ERROR", {"error": str(exc), "rawBody": truncate(body)})
        raise MalformedPayload("Invalid JSON format") from exc


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

def _normalize_other(body: Union[bytes, str, None]) -> Any:
    """Unknown or missing content type: accept the body only if it is JSON."""
    if isinstance(body, (bytes, bytearray)):
        body = bytes(body).decode("utf-8", errors="replace")
    if not body or not body.strip():
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


def normalize_payload(
    content_type: Optional[str],
    body: Union[bytes, str, None] = None,
    form_fields: Optional[FormFields] = None,
) -> dict:
    """
    Return the canonical envelope for an inbound webhook.

    Args:
        content_type: Raw Content-Type header (parameters such as charset are ignored).
        body:         Raw request body.
        form_fields:  Parsed form fields (mapping or (key, value) pairs), used
                      when the body is form-encoded.

    Raises:
        MalformedPayload: the body is not JSON where JSON is required, or the
                          result is not an object.
    """
    media_type = (content_type or "").split(";")[0].strip().lower()

    if media_type == FORM_CONTENT_TYPE:
        payload = normalize_form(form_fields or {})
    elif media_type == JSON_CONTENT_TYPE or media_type.endswith("+json"):
        payload = normalize_json(body if body is not None else "")
    else:
        payload = _normalize_other(body)

    if not isinstance(payload, dict):
        log_error("INVALID_PAYLOAD", {
            "payloadType": type(payload).__name__,
            "contentType": content_type,
        })
        raise MalformedPayload("Invalid payload structure")

    return payload
