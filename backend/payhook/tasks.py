import logging
from datetime import UTC, datetime, timedelta

from payhook.celery_app import celery
from payhook.core.config import get_settings
from payhook.db import crud
from payhook.db.session import SessionLocal
from payhook.errors import DownstreamProcessingError
from payhook.handlers import forward_to_application, registry
from payhook.schemas.events import event_adapter

logger = logging.getLogger(__name__)

# Constants for retry logic
BASE_DELAY = 30  # seconds
MAX_ATTEMPTS = 5


def run_handlers(event) -> None:
    settings = get_settings()
    if settings.forward_url:
        forward_to_application(event, settings.forward_url, settings.forward_timeout)
    registry.dispatch(event)


@celery.task(bind=True)
def process_delivery(self, delivery_id: str, attempt: int = 1, session=None):
    logger.info(
        f"Starting process_delivery task with delivery_id={delivery_id}, attempt={attempt}"
    )
    if self.request.id:
        logger.info(f"Task ID: {self.request.id}")
    if session is None:
        session = SessionLocal()
        should_close = True
    else:
        should_close = False

    try:
        try:
            delivery_id = int(delivery_id)
        except (TypeError, ValueError):
            raise ValueError("Invalid delivery ID")

        delivery = crud.get_delivery(session, delivery_id)
        if not delivery:
            raise ValueError("Delivery not found")

        event = event_adapter.validate_python(delivery.payload)

        try:
            run_handlers(event)
        except DownstreamProcessingError as exc:
            logger.error(f"Processing delivery {delivery_id} failed: {exc}")
            next_run = None
            if attempt < MAX_ATTEMPTS:
                backoff = BASE_DELAY * (2 ** (attempt - 1))  # 30s, 60s, 120s, ...
                next_run = datetime.now(UTC) + timedelta(seconds=backoff)
                process_delivery.apply_async(
                    args=[str(delivery_id), attempt + 1], eta=next_run
                )
            else:
                logger.error(
                    f"Giving up on delivery {delivery_id} after {attempt} attempts"
                )
            crud.mark_failed(session, delivery, attempt, str(exc), next_run)
            return {"status": delivery.status, "attempt": attempt}

        crud.mark_processed(session, delivery, attempt)
        logger.info(f"Delivery {delivery_id} processed on attempt {attempt}")
        return {"status": delivery.status, "attempt": attempt}
    finally:
        if should_close:
            session.close()
