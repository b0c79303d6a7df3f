import uuid
from datetime import datetime
from pydantic import BaseModel


class NotificationRead(BaseModel):
    model_config = {"from_attributes": True}
    id: uuid.UUID
    kind: str
    category: str
    title: str
    message: str | None
    entity_type: str | None
    entity_id: str | None
    payload: dict | None
    is_read: bool
    created_at: datetime


class OutboxMessageRead(BaseModel):
    model_config = {"from_attributes": True}
    id: uuid.UUID
    channel: str
    recipient_id: uuid.UUID | None
    kind: str
    status: str
    attempts: int
    last_error: str | None
    available_at: datetime
    sent_at: datetime | None
    created_at: datetime


class MarkAllReadResult(BaseModel):
    updated: int
