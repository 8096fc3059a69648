"""Dispatch table for verified events.

Handlers are looked up by ``(event_object, event_type)``. Both classifiers are
opaque strings taken from the delivery; ``"*"`` matches anything::

    @registry.register("payment_request", "completed")
    def fulfil(event):
        ...
"""
import logging
from collections import defaultdict
from typing import Callable

import httpx

from payhook.errors import DownstreamProcessingError
from payhook.schemas.events import WebhookEvent

logger = logging.getLogger(__name__)

WILDCARD = "*"

Handler = Callable[[WebhookEvent], None]


class HandlerRegistry:
    def __init__(self):
        self._handlers: dict[tuple[str, str], list[Handler]] = defaultdict(list)

    def register(self, event_object: str = WILDCARD, event_type: str = WILDCARD):
        def decorator(func: Handler) -> Handler:
            self._handlers[(event_object, event_type)].append(func)
            return func

        return decorator

    def handlers_for(self, event: WebhookEvent) -> list[Handler]:
        keys = [
            (event.event_object, event.event_type),
            (event.event_object, WILDCARD),
            (WILDCARD, event.event_type),
            (WILDCARD, WILDCARD),
        ]
        found: list[Handler] = []
        for key in dict.fromkeys(keys):
            found.extend(self._handlers.get(key, ()))
        return found

    def dispatch(self, event: WebhookEvent) -> int:
        """Run every matching handler; return how many ran."""
        handlers = self.handlers_for(event)
        if not handlers:
            logger.info(
                f"No handler for {event.event_object}/{event.event_type}, skipping"
            )
        for handler in handlers:
            try:
                handler(event)
            except DownstreamProcessingError:
                raise
            except Exception as e:
                raise DownstreamProcessingError(
                    f"Handler {getattr(handler, '__name__', handler)!r} failed: {e}"
                ) from e
        return len(handlers)

    def clear(self) -> None:
        self._handlers.clear()


registry = HandlerRegistry()


def forward_to_application(event: WebhookEvent, url: str, timeout: float = 10.0) -> int:
    """POST the normalized event to the integrating application."""
    try:
        r = httpx.post(url, json=event.model_dump(mode="json"), timeout=timeout)
    except httpx.HTTPError as e:
        raise DownstreamProcessingError(f"Forwarding to {url} failed: {e}") from e
    if not 200 <= r.status_code < 300:
        raise DownstreamProcessingError(
            f"Forwarding to {url} returned HTTP {r.status_code}"
        )
    return r.status_code
