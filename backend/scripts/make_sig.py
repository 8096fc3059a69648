#!/usr/bin/env python3
"""Sign a test delivery.

Usage:
    make_sig.py form <salt> 'payment_id=p1&amount=2.00&...'
    make_sig.py json <salt> '{"id": "pr_1", "status": "completed"}'

``form`` prints the body with its ``hmac`` field appended; ``json`` prints the
value for the Hitpay-Signature header.
"""
import json
import sys
from urllib.parse import parse_qsl, urlencode

from payhook.services.signature import sign_body, sign_fields


def sign_form_body(secret: str, body: str) -> str:
    fields = dict(parse_qsl(body, keep_blank_values=True))
    fields.pop("hmac", None)
    fields["hmac"] = sign_fields(fields, secret)
    return urlencode(fields)


if __name__ == "__main__":
    if len(sys.argv) != 4 or sys.argv[1] not in ("form", "json"):
        print(__doc__, file=sys.stderr)
        sys.exit(1)

    mode, secret, payload = sys.argv[1:]

    if mode == "json":
        # Validate payload is valid JSON
        try:
            json.loads(payload)
        except json.JSONDecodeError:
            print("Error: Payload must be valid JSON", file=sys.stderr)
            sys.exit(1)
        print(sign_body(payload.encode("utf-8"), secret))
    else:
        print(sign_form_body(secret, payload))
