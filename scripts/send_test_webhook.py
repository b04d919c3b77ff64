#!/usr/bin/env python3
"""
Dev helper: send a sample Nubimed booking webhook to the local receiver.

Builds a booking payload shaped like Nubimed's ``new_booking`` callback and
POSTs it to /webhook/nubimed, either as JSON or form-encoded the way Make /
Zapier relays it (``name=...&data=<JSON string>``). Can also exercise the
deletion endpoint.

Usage
-----
# JSON body, targeting localhost:3000
python scripts/send_test_webhook.py

# Form-encoded body
python scripts/send_test_webhook.py --form

# Another event name / booking id / start time
python scripts/send_test_webhook.py --event new_or_updated_booking --booking-id B42 \
    --start 2025-03-01T10:30:00Z

# Delete the calendar event correlated to a booking
python scripts/send_test_webhook.py --delete --contact-id abc123 --booking-id B42

# Print the payload without sending
python scripts/send_test_webhook.py --dry-run
"""

import argparse
import json
import sys
import textwrap
from pathlib import Path

import httpx
from dotenv import load_dotenv


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def _build_booking_payload(
    event: str,
    booking_id: str,
    start_at: str,
    phone: str,
    email: str,
    name: str,
    surname: str,
) -> dict:
    """Nubimed booking callback: {"name": ..., "data": {"booking": {...}}}."""
    return {
        "name": event,
        "data": {
            "booking": {
                "id": booking_id,
                "start_at": start_at,
                "status": 4,
                "comment": "Revisión anual",
                "patients": [
                    {
                        "name": name,
                        "surname": surname,
                        "phone": phone,
                        "email": email,
                        "country": "España",
                    }
                ],
            },
            "doctor": {"name": "Laura", "surname": "Gómez"},
        },
    }


def _build_deletion_payload(contact_id: str, booking_id: str) -> dict:
    return {"contact_id": contact_id, "deleted_booking_id": booking_id}


# ---------------------------------------------------------------------------
# Pretty printer
# ---------------------------------------------------------------------------

def _print_response(response: httpx.Response) -> None:
    status = response.status_code
    symbol = "OK" if status == 200 else "FAIL"
    print(f"\n[{symbol}] HTTP {status}")
    try:
        print(json.dumps(response.json(), indent=2, ensure_ascii=False))
    except ValueError:
        print(response.text)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")
    load_dotenv(project_root / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="send_test_webhook.py",
        description="Send a sample Nubimed webhook to the receiver.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python scripts/send_test_webhook.py
              python scripts/send_test_webhook.py --form
              python scripts/send_test_webhook.py --delete --contact-id abc123 --booking-id B1
        """),
    )
    parser.add_argument("--url", default="http://localhost:3000", help="Receiver base URL")
    parser.add_argument("--event", default="new_booking", help="Nubimed callback name")
    parser.add_argument("--booking-id", default="B1")
    parser.add_argument("--start", default="2025-01-10T09:00:00Z", help="Booking start (ISO 8601)")
    parser.add_argument("--phone", default="600111222")
    parser.add_argument("--email", default="")
    parser.add_argument("--name", default="Ana")
    parser.add_argument("--surname", default="Ruiz")
    parser.add_argument("--form", action="store_true", help="Send form-encoded instead of JSON")
    parser.add_argument("--delete", action="store_true", help="Call the deletion endpoint")
    parser.add_argument("--contact-id", default=None, help="GHL contact id (required with --delete)")
    parser.add_argument("--dry-run", action="store_true", help="Print the payload without sending it")

    args = parser.parse_args()

    if args.delete:
        if not args.contact_id:
            print("ERROR: --contact-id is required with --delete", file=sys.stderr)
            return 1
        payload = _build_deletion_payload(args.contact_id, args.booking_id)
        endpoint = f"{args.url.rstrip('/')}/webhook/nubimed/deleted"
    else:
        payload = _build_booking_payload(
            event=args.event,
            booking_id=args.booking_id,
            start_at=args.start,
            phone=args.phone,
            email=args.email,
            name=args.name,
            surname=args.surname,
        )
        endpoint = f"{args.url.rstrip('/')}/webhook/nubimed"

    print(f"Endpoint : {endpoint}")
    print(f"Encoding : {'form' if args.form else 'json'}")

    if args.dry_run:
        print("\n[DRY RUN] Payload:")
        print(json.dumps(payload, indent=2, ensure_ascii=False))
        return 0

    try:
        if args.form and not args.delete:
            form = {"name": payload["name"], "data": json.dumps(payload["data"])}
            response = httpx.post(endpoint, data=form, timeout=30)
        else:
            response = httpx.post(endpoint, json=payload, timeout=30)
    except httpx.HTTPError as exc:
        print(f"ERROR: request failed: {exc}", file=sys.stderr)
        return 1

    _print_response(response)
    return 0 if response.status_code == 200 else 1


if __name__ == "__main__":
    sys.exit(main())
