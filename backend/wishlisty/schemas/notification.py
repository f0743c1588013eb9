from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class NotificationPublic(BaseModel):
    id: int
    user_id: int
    related_user_id: int | None = None
    type: str
    title: str
    message: str | None = None
    message_key: str | None = None
    related_id: int | None = None
    related_wishlist_id: int | None = None
    is_read: bool = False
    created_at: datetime

    model_config = {"from_attributes": True}


class NotificationPage(BaseModel):
    count: int
    total: int
    unread_count: int
    data: list[NotificationPublic]


class UnreadCount(BaseModel):
    unread_count: int


class BadgeState(BaseModel):
    last_badge_seen_at: datetime
    unread_count: int


class MarkAllReadResult(BaseModel):
    updated_count: int
    unread_count: int


class DispatchResult(BaseModel):
    notification: NotificationPublic
    unread_count: int
    channel: Literal["realtime", "push", "none"]


class DeviceRegistration(BaseModel):
    device_token: str | None = Field(default=None, max_length=512)

    @field_validator("device_token")
    @classmethod
    def _token_strip(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None
