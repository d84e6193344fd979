"""Pydantic v2 schemas for the notification inbox."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator

from visaflow.schemas.common import enum_value


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    notification_id: uuid.UUID
    recipient_id: uuid.UUID
    sender_id: uuid.UUID | None
    kind: str
    event: str
    title: str
    message: str
    data: dict | None
    link: str | None
    priority: str
    category: str
    channels: list
    is_read: bool
    read_at: datetime | None
    created_at: datetime

    @field_validator("kind", "priority", "category", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return enum_value(v)


class NotificationPage(BaseModel):
    items: list[NotificationResponse]
    total: int
    unread: int
    page: int
    limit: int
