import httpx
import pytest
from payhook.errors import DownstreamProcessingError
from payhook.handlers import HandlerRegistry, forward_to_application
from payhook.schemas.events import PlatformEvent, VendorEvent


@pytest.fixture
def local_registry():
    return HandlerRegistry()


@pytest.fixture
def refund_event():
    return PlatformEvent(
        event_type="refunded", event_object="charge", payload={"id": "ch_1"}
    )


def test_exact_and_wildcard_matches(local_registry, refund_event):
    calls = []

    @local_registry.register("charge", "refunded")
    def exact(event):
        calls.append("exact")

    @local_registry.register("charge")
    def any_charge(event):
        calls.append("object")

    @local_registry.register(event_type="refunded")
    def any_refund(event):
        calls.append("type")

    @local_registry.register()
    def everything(event):
        calls.append("all")

    @local_registry.register("payment_request", "completed")
    def unrelated(event):
        calls.append("unrelated")

    assert local_registry.dispatch(refund_event) == 4
    assert calls == ["exact", "object", "type", "all"]


def test_vendor_events_dispatch_on_status(local_registry, vendor_fields):
    calls = []
    local_registry.register("payment", "completed")(calls.append)
    event = VendorEvent.from_fields(vendor_fields)
    assert local_registry.dispatch(event) == 1
    assert calls == [event]


def test_no_handlers(local_registry, refund_event):
    assert local_registry.dispatch(refund_event) == 0


def test_handler_error_wrapped(local_registry, refund_event):
    @local_registry.register()
    def broken(event):
        raise KeyError("order")

    with pytest.raises(DownstreamProcessingError, match="broken"):
        local_registry.dispatch(refund_event)


def test_forward_network_error(refund_event, respx_mock):
    respx_mock.post("http://app.internal/hooks").mock(
        side_effect=httpx.ConnectError("refused")
    )
    with pytest.raises(DownstreamProcessingError):
        forward_to_application(refund_event, "http://app.internal/hooks")


def test_forward_sends_normalized_event(refund_event, respx_mock):
    route = respx_mock.post("http://app.internal/hooks").mock(
        return_value=httpx.Response(200)
    )
    assert forward_to_application(refund_event, "http://app.internal/hooks") == 200
    assert route.calls.last.request.headers["content-type"] == "application/json"
