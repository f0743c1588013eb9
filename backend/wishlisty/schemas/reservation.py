from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from wishlisty.models.models import ReservationStatusEnum


class ReservationRequest(BaseModel):
    quantity: int = Field(default=1, ge=1)
    # Absent action means "toggle relative to my current reservation"
    action: Literal["reserve", "cancel"] | None = None


class ReservationPublic(BaseModel):
    id: int
    item_id: int
    reserver_id: int
    quantity: int
    status: ReservationStatusEnum
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ReservationOutcome(BaseModel):
    reservation_id: int
    item_id: int
    quantity: int
    status: ReservationStatusEnum
    intent: Literal["reserve", "cancel"]
    remaining: int
    reserved_until: datetime | None = None


class ExtensionOutcome(BaseModel):
    item_id: int
    reserved_until: datetime
    extension_count: int


class ReservedItemPublic(BaseModel):
    reservation: ReservationPublic
    item_title: str
    wishlist_id: int
    owner_id: int
    reserved_until: datetime | None = None
    is_received: bool = False
    is_purchased: bool = False


class ReservationList(BaseModel):
    count: int
    reservations: list[ReservedItemPublic]


class SweepSummary(BaseModel):
    processed: int = 0
    notified: int = 0
    failed: int = 0
