from datetime import datetime
from datetime import timezone as tz

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utc_now():
    return datetime.now(tz.utc)


class DeliveryStatus:
    QUEUED = "queued"
    PROCESSED = "processed"
    FAILED = "failed"


class ProcessedEvent(Base):
    __tablename__ = "processed_events"
    id = Column(Integer, primary_key=True)
    event_key = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class WebhookDelivery(Base):
    __tablename__ = "webhook_deliveries"
    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False)
    event_key = Column(String, nullable=False)
    event_type = Column(String, nullable=True)
    event_object = Column(String, nullable=True)
    payload = Column(JSON, nullable=False)
    sha256 = Column(String, nullable=False)
    status = Column(String, nullable=False, default=DeliveryStatus.QUEUED)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_run = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (Index("ix_delivery_event_key", "event_key"),)
