"""
Webhook intake: authenticate a delivery, normalize it into a typed event and
let it through at most once.

Each delivery moves through::

    received -> verified | rejected -> processed | duplicate

``rejected``, ``duplicate`` and ``processed`` are terminal. Nothing here
retries; redelivery is the gateway's job, and answering fast and
deterministically is ours.
"""
import enum
import json
import logging
from dataclasses import dataclass
from typing import Mapping
from urllib.parse import parse_qsl

from payhook.core.config import DedupFailurePolicy, Settings
from payhook.errors import (
    MalformedPayload,
    SignatureMismatch,
    SignatureMissing,
    VerificationError,
)
from payhook.schemas.events import PlatformEvent, VendorEvent, WebhookEvent
from payhook.services import signature
from payhook.services.dedup import DedupStore, dedupe

logger = logging.getLogger(__name__)

VENDOR = "vendor"
PLATFORM = "platform"

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
JSON_CONTENT_TYPE = "application/json"


class DeliveryState(str, enum.Enum):
    RECEIVED = "received"
    VERIFIED = "verified"
    REJECTED = "rejected"
    PROCESSED = "processed"
    DUPLICATE = "duplicate"


@dataclass
class DeliveryOutcome:
    state: DeliveryState
    event: WebhookEvent | None = None
    error: VerificationError | None = None

    @property
    def accepted(self) -> bool:
        return self.state in (DeliveryState.PROCESSED, DeliveryState.DUPLICATE)


def _lower_keys(headers: Mapping[str, str]) -> dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


def parse_form(body: bytes) -> dict[str, str]:
    """Decode an ``application/x-www-form-urlencoded`` body, keeping blank values."""
    if not body:
        raise MalformedPayload("Empty form body")
    try:
        text = body.decode("utf-8")
        pairs = parse_qsl(
            text, keep_blank_values=True, strict_parsing=True, errors="strict"
        )
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedPayload(f"Undecodable form body: {e}") from e
    fields: dict[str, str] = {}
    for key, value in pairs:
        if key in fields:
            # a repeated key makes the signed string ambiguous
            raise MalformedPayload(f"Repeated form field: {key}")
        fields[key] = value
    return fields


class WebhookVerifier:
    def __init__(
        self,
        secret: str,
        store: DedupStore,
        failure_policy: DedupFailurePolicy = DedupFailurePolicy.FAIL_CLOSED,
        signature_field: str = signature.DEFAULT_SIGNATURE_FIELD,
        signature_header: str = "Hitpay-Signature",
        event_type_header: str = "Hitpay-Event-Type",
        event_object_header: str = "Hitpay-Event-Object",
    ):
        self.secret = secret
        self.store = store
        self.failure_policy = failure_policy
        self.signature_field = signature_field
        self.signature_header = signature_header.lower()
        self.event_type_header = event_type_header.lower()
        self.event_object_header = event_object_header.lower()

    @classmethod
    def from_settings(cls, settings: Settings, store: DedupStore) -> "WebhookVerifier":
        return cls(
            secret=settings.hitpay_salt.get_secret_value(),
            store=store,
            failure_policy=settings.dedup_failure_policy,
            signature_field=settings.signature_field,
            signature_header=settings.signature_header,
            event_type_header=settings.event_type_header,
            event_object_header=settings.event_object_header,
        )

    # ---------- channel selection ----------
    def select_channel(self, content_type: str | None, headers: Mapping[str, str]) -> str:
        media_type = (content_type or "").split(";", 1)[0].strip().lower()
        if media_type == JSON_CONTENT_TYPE or self.signature_header in _lower_keys(headers):
            return PLATFORM
        if media_type == FORM_CONTENT_TYPE:
            return VENDOR
        raise MalformedPayload(f"Unsupported content type: {media_type or 'none'}")

    # ---------- authentication ----------
    def authenticate_vendor(self, fields: Mapping[str, str]) -> VendorEvent:
        if not fields.get(self.signature_field):
            raise SignatureMissing(f"Form field '{self.signature_field}' is missing")
        if not signature.verify_form_encoded(fields, self.secret, self.signature_field):
            raise SignatureMismatch("Form signature does not match")
        signed = {k: v for k, v in fields.items() if k != self.signature_field}
        if not signed.get("payment_id") and not signed.get("payment_request_id"):
            raise MalformedPayload("Form delivery identifies no payment")
        return VendorEvent.from_fields(signed)

    def authenticate_platform(self, body: bytes, headers: Mapping[str, str]) -> PlatformEvent:
        lowered = _lower_keys(headers)
        received = lowered.get(self.signature_header)
        if not received:
            raise SignatureMissing(f"Header '{self.signature_header}' is missing")
        # the digest covers the raw bytes, so check before parsing anything
        if not signature.verify_raw_body(body, received, self.secret):
            raise SignatureMismatch("Body signature does not match")
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedPayload(f"Invalid JSON payload: {e}") from e
        if not isinstance(payload, dict):
            raise MalformedPayload("JSON payload must be an object")
        if payload.get("id") in (None, ""):
            raise MalformedPayload("JSON payload has no id")
        return PlatformEvent(
            event_type=lowered.get(self.event_type_header, ""),
            event_object=lowered.get(self.event_object_header, ""),
            payload=payload,
        )

    def authenticate(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        channel = self.select_channel(_lower_keys(headers).get("content-type"), headers)
        if channel == VENDOR:
            return self.authenticate_vendor(parse_form(body))
        return self.authenticate_platform(body, headers)

    # ---------- delivery state machine ----------
    def receive(self, body: bytes, headers: Mapping[str, str]) -> DeliveryOutcome:
        """Authenticate and deduplicate one delivery.

        Verification failures come back as a ``rejected`` outcome.
        DedupStoreUnavailable propagates when the failure policy is fail-closed.
        """
        logger.info(f"Delivery {DeliveryState.RECEIVED.value}: {len(body)} bytes")
        try:
            event = self.authenticate(body, headers)
        except VerificationError as e:
            logger.warning(
                f"Delivery {DeliveryState.REJECTED.value}: {type(e).__name__}: {e}"
            )
            return DeliveryOutcome(DeliveryState.REJECTED, error=e)

        logger.info(f"Delivery {DeliveryState.VERIFIED.value}: {event.kind} {event.event_id}")
        if not dedupe(event.event_id, self.store, self.failure_policy):
            logger.info(f"Delivery {DeliveryState.DUPLICATE.value}: {event.event_id}")
            return DeliveryOutcome(DeliveryState.DUPLICATE, event=event)

        logger.info(f"Delivery {DeliveryState.PROCESSED.value}: {event.event_id}")
        return DeliveryOutcome(DeliveryState.PROCESSED, event=event)
