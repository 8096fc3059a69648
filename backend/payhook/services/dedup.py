"""
At-most-once bookkeeping for webhook deliveries.

The gateway redelivers an event whenever it does not get a 2xx answer, always
with the same identifiers. Every store here exposes one primitive,
``add_if_absent``, which must check membership and record the key in a single
atomic step; a separate "check" followed by a "set" lets two concurrent
deliveries both look new.
"""
import logging
import threading
import time
from typing import Callable, Protocol

import redis as redis_lib
import sqlalchemy.exc
from sqlalchemy.orm import Session

from payhook.core.config import DedupFailurePolicy
from payhook.db import models
from payhook.errors import DedupStoreUnavailable

logger = logging.getLogger(__name__)

_KEY_PREFIX = "payhook:seen"


class DedupStore(Protocol):
    def add_if_absent(self, key: str) -> bool:
        """Record ``key``; return True only if it was not already present."""
        ...

    def discard(self, key: str) -> None:
        """Forget ``key`` so the next delivery of it counts as new."""
        ...


class InMemoryDedupStore:
    """Process-local store for development and tests."""

    def __init__(self, ttl_seconds: int | None = None):
        self.ttl_seconds = ttl_seconds
        self._seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def add_if_absent(self, key: str) -> bool:
        now = time.monotonic()
        with self._lock:
            seen_at = self._seen.get(key)
            if seen_at is not None and (
                self.ttl_seconds is None or now - seen_at < self.ttl_seconds
            ):
                return False
            if self.ttl_seconds is not None:
                self._prune(now)
            self._seen[key] = now
            return True

    def discard(self, key: str) -> None:
        with self._lock:
            self._seen.pop(key, None)

    def _prune(self, now: float) -> None:
        expired = [k for k, seen_at in self._seen.items() if now - seen_at >= self.ttl_seconds]
        for k in expired:
            del self._seen[k]


class RedisDedupStore:
    """``SET key 1 NX EX ttl``: Redis answers the check and the write together."""

    def __init__(self, client: redis_lib.Redis, ttl_seconds: int = 86400):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 86400) -> "RedisDedupStore":
        return cls(redis_lib.from_url(url, decode_responses=True), ttl_seconds)

    def add_if_absent(self, key: str) -> bool:
        try:
            was_set = self.client.set(
                f"{_KEY_PREFIX}:{key}", "1", nx=True, ex=self.ttl_seconds
            )
        except redis_lib.RedisError as e:
            raise DedupStoreUnavailable(f"Redis unavailable: {e}") from e
        return bool(was_set)

    def discard(self, key: str) -> None:
        try:
            self.client.delete(f"{_KEY_PREFIX}:{key}")
        except redis_lib.RedisError as e:
            raise DedupStoreUnavailable(f"Redis unavailable: {e}") from e


class DatabaseDedupStore:
    """Relies on the unique constraint of ``processed_events.event_key``."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def add_if_absent(self, key: str) -> bool:
        try:
            db = self.session_factory()
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise DedupStoreUnavailable(f"Database unavailable: {e}") from e
        try:
            db.add(models.ProcessedEvent(event_key=key))
            db.commit()
            return True
        except sqlalchemy.exc.IntegrityError:
            db.rollback()
            return False
        except sqlalchemy.exc.SQLAlchemyError as e:
            db.rollback()
            raise DedupStoreUnavailable(f"Database unavailable: {e}") from e
        finally:
            db.close()

    def discard(self, key: str) -> None:
        try:
            db = self.session_factory()
        except sqlalchemy.exc.SQLAlchemyError as e:
            raise DedupStoreUnavailable(f"Database unavailable: {e}") from e
        try:
            db.query(models.ProcessedEvent).filter_by(event_key=key).delete()
            db.commit()
        except sqlalchemy.exc.SQLAlchemyError as e:
            db.rollback()
            raise DedupStoreUnavailable(f"Database unavailable: {e}") from e
        finally:
            db.close()


def dedupe(
    event_id: str,
    store: DedupStore,
    policy: DedupFailurePolicy = DedupFailurePolicy.FAIL_CLOSED,
) -> bool:
    """Mark ``event_id`` as seen. Returns True only for the first delivery.

    When the store cannot be reached, ``FAIL_CLOSED`` re-raises
    DedupStoreUnavailable so the caller can answer non-2xx and have the
    provider retry; ``FAIL_OPEN`` logs and treats the event as new.
    """
    if not event_id:
        raise ValueError("event_id is required for deduplication")
    try:
        is_new = store.add_if_absent(event_id)
    except DedupStoreUnavailable:
        if policy == DedupFailurePolicy.FAIL_OPEN:
            logger.warning(
                f"Dedup store unavailable, allowing event {event_id} through",
                exc_info=True,
            )
            return True
        logger.error(f"Dedup store unavailable, refusing event {event_id}")
        raise
    if not is_new:
        logger.info(f"Duplicate delivery for event {event_id}")
    return is_new


def release(event_id: str, store: DedupStore) -> bool:
    """Undo ``dedupe`` for an event whose delivery could not be recorded.

    Returns False when the store could not be reached; the mark then stays
    until its TTL runs out.
    """
    try:
        store.discard(event_id)
    except DedupStoreUnavailable:
        logger.error(f"Could not release dedup mark for event {event_id}", exc_info=True)
        return False
    logger.info(f"Released dedup mark for event {event_id}")
    return True
