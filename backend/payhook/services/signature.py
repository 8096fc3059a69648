"""
HMAC-SHA256 signatures for gateway webhooks.

Two schemes are in use:

* form-encoded deliveries embed the signature in the body; the remaining
  fields are sorted by key and concatenated as ``key + value`` pairs with no
  separator, then signed with the salt.
* JSON deliveries carry the signature in a header; the exact raw body bytes
  are signed.

Every ``verify_*`` function fails closed and never raises.
"""
import hashlib
import hmac
import logging
from typing import Mapping

logger = logging.getLogger(__name__)

DEFAULT_SIGNATURE_FIELD = "hmac"


def signing_string(fields: Mapping[str, str], signature_field: str = DEFAULT_SIGNATURE_FIELD) -> str:
    """Build ``k1v1k2v2...`` over every field except the signature, sorted by key."""
    return "".join(
        f"{key}{fields[key]}" for key in sorted(fields) if key != signature_field
    )


def sign_fields(
    fields: Mapping[str, str],
    secret: str,
    signature_field: str = DEFAULT_SIGNATURE_FIELD,
) -> str:
    message = signing_string(fields, signature_field).encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_body(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _digests_equal(expected: str, received: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


def verify_form_encoded(
    fields: Mapping[str, str],
    secret: str,
    signature_field: str = DEFAULT_SIGNATURE_FIELD,
) -> bool:
    """Check the signature embedded in a form-encoded delivery."""
    if not secret:
        logger.warning("No webhook salt configured, rejecting form delivery")
        return False
    received = fields.get(signature_field)
    if not isinstance(received, str) or not received:
        return False
    if not all(
        isinstance(key, str) and isinstance(value, str) for key, value in fields.items()
    ):
        return False
    return _digests_equal(sign_fields(fields, secret, signature_field), received.strip())


def verify_raw_body(body: bytes, signature: str | None, secret: str) -> bool:
    """Check a header-carried signature against the raw request body.

    ``body`` must be the bytes exactly as received: parsing and re-serializing
    JSON changes whitespace and key order and breaks the digest.
    """
    if not secret:
        logger.warning("No webhook salt configured, rejecting raw-body delivery")
        return False
    if not isinstance(signature, str) or not signature.strip():
        return False
    if not isinstance(body, (bytes, bytearray)):
        return False
    return _digests_equal(sign_body(bytes(body), secret), signature.strip())
