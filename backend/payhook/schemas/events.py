from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

# vendor deliveries have no event object header; they always describe a payment
VENDOR_EVENT_OBJECT = "payment"


class VendorEvent(BaseModel):
    """Form-encoded notification tied to one payment request."""

    kind: Literal["vendor"] = "vendor"
    payment_id: str = ""
    payment_request_id: str = ""
    phone: str = ""
    amount: str = ""
    currency: str = ""
    status: str = ""
    reference_number: str = ""
    fields: dict[str, str] = Field(
        default_factory=dict, description="Every signed field, signature excluded"
    )

    @classmethod
    def from_fields(cls, fields: dict[str, str]) -> "VendorEvent":
        known = {name: fields[name] for name in cls._known_fields() if name in fields}
        return cls(fields=dict(fields), **known)

    @classmethod
    def _known_fields(cls) -> tuple[str, ...]:
        return tuple(name for name in cls.model_fields if name not in ("kind", "fields"))

    @property
    def event_id(self) -> str:
        return f"{self.payment_request_id}:{self.payment_id}:{self.status}"

    @property
    def event_object(self) -> str:
        return VENDOR_EVENT_OBJECT

    @property
    def event_type(self) -> str:
        return self.status


class PlatformEvent(BaseModel):
    """JSON notification; classifiers come from transport headers."""

    kind: Literal["platform"] = "platform"
    event_type: str = Field("", description="Event type header, opaque")
    event_object: str = Field("", description="Event object header, opaque")
    payload: dict[str, Any]

    @property
    def event_id(self) -> str:
        return f"{self.event_object}:{self.payload.get('id', '')}:{self.event_type}"


WebhookEvent = Annotated[Union[VendorEvent, PlatformEvent], Field(discriminator="kind")]

event_adapter = TypeAdapter(WebhookEvent)
