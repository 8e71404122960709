"""
Pydantic schemas for event-related request/response validation.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field, model_validator

from app.models.event import EventStatus, EventType


class RefundTierSchema(BaseModel):
    days_before: int = Field(..., ge=0)
    percent: int = Field(..., ge=0, le=100)


class EventCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    event_type: EventType = EventType.FREE
    price: Decimal = Field(default=Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    currency: str = Field(default="INR", min_length=3, max_length=3)
    start_date: datetime
    status: EventStatus = EventStatus.DRAFT
    organizer_id: Optional[int] = None
    capacity: Optional[int] = Field(None, ge=1, le=100000)
    waitlist_enabled: bool = False
    refund_enabled: bool = False
    cancellation_deadline_hours: Optional[int] = Field(None, ge=0)
    refund_tiers: list[RefundTierSchema] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_price(self):
        if self.event_type == EventType.PAID and self.price <= 0:
            raise ValueError("Paid events need a price greater than zero")
        if self.event_type == EventType.FREE and self.price != 0:
            raise ValueError("Free events cannot have a price")
        return self


class CapacityUpdate(BaseModel):
    capacity: Optional[int] = Field(..., ge=0, le=100000)
    force: bool = False


class EventResponse(BaseModel):
    id: int
    title: str
    event_type: EventType
    price: Decimal
    currency: str
    start_date: datetime
    status: EventStatus
    organizer_id: Optional[int]
    capacity: Optional[int]
    confirmed_count: int
    available_slots: Optional[int]
    waitlist_enabled: bool
    refund_enabled: bool
    cancellation_deadline_hours: int
    refund_tiers: Optional[list[RefundTierSchema]]
    version: int
    created_at: datetime

    model_config = {"from_attributes": True}


class CapacityUpdateResponse(BaseModel):
    event: EventResponse
    promoted_registration_ids: list[int]


class RefundQuoteResponse(BaseModel):
    eligible: bool
    percent: int
    amount: Decimal
    reason: str
