from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class DeliveryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    event_key: str
    event_type: Optional[str]
    event_object: Optional[str]
    status: str
    attempts: int
    last_error: Optional[str]
    next_run: Optional[datetime]
    created_at: datetime


class DeliveryDetail(DeliveryOut):
    payload: dict[str, Any]


class DeliveryReplayResponse(BaseModel):
    status: str
    delivery_id: int
