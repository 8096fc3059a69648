import hashlib

from payhook.db import models
from payhook.schemas.events import WebhookEvent
from sqlalchemy.orm import Session


def record_delivery(db: Session, event: WebhookEvent, raw: bytes) -> models.WebhookDelivery:
    delivery = models.WebhookDelivery(
        kind=event.kind,
        event_key=event.event_id,
        event_type=event.event_type,
        event_object=event.event_object,
        payload=event.model_dump(mode="json"),
        sha256=hashlib.sha256(raw).hexdigest(),
        status=models.DeliveryStatus.QUEUED,
        attempts=0,
    )
    db.add(delivery)
    db.commit()
    db.refresh(delivery)
    return delivery


def get_delivery(db: Session, delivery_id: int) -> models.WebhookDelivery | None:
    return db.query(models.WebhookDelivery).filter_by(id=delivery_id).first()


def list_deliveries(db: Session, status: str | None = None, limit: int = 100):
    query = db.query(models.WebhookDelivery)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(models.WebhookDelivery.id.desc()).limit(limit).all()


def mark_processed(db: Session, delivery: models.WebhookDelivery, attempt: int) -> None:
    delivery.status = models.DeliveryStatus.PROCESSED
    delivery.attempts = attempt
    delivery.last_error = None
    delivery.next_run = None
    db.commit()


def mark_failed(db: Session, delivery: models.WebhookDelivery, attempt: int, error: str, next_run=None) -> None:
    delivery.status = models.DeliveryStatus.FAILED
    delivery.attempts = attempt
    delivery.last_error = error
    delivery.next_run = next_run
    db.commit()


def requeue(db: Session, delivery: models.WebhookDelivery) -> None:
    delivery.status = models.DeliveryStatus.QUEUED
    delivery.next_run = None
    db.commit()
