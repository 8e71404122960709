"""
Pydantic schemas for registration-related request/response validation.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field

from app.models.registration import PaymentStatus, RefundStatus, RegistrationStatus, RegistrationType
from app.schemas.event import RefundQuoteResponse


class RegistrationCreate(BaseModel):
    event_id: int
    payment_ref: Optional[str] = Field(None, max_length=100)


class PaymentInitiate(BaseModel):
    event_id: int


class PaymentOrderResponse(BaseModel):
    order_ref: str
    amount: Decimal
    currency: str


class PaymentComplete(BaseModel):
    payment_ref: str = Field(..., min_length=1, max_length=100)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ForceCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    override_amount: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)


class BatchCancelRequest(BaseModel):
    registration_ids: list[int] = Field(..., min_length=1, max_length=500)
    reason: Optional[str] = Field(None, max_length=500)


class RegistrationResponse(BaseModel):
    id: int
    event_id: int
    student_id: int
    registration_type: RegistrationType
    registration_status: RegistrationStatus
    payment_status: PaymentStatus
    amount_paid: Decimal
    registered_at: datetime
    confirmed_at: Optional[datetime]
    promoted_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    refund_status: Optional[RefundStatus]
    refund_amount: Optional[Decimal]

    model_config = {"from_attributes": True}


class CancellationResponse(BaseModel):
    registration: RegistrationResponse
    refund: RefundQuoteResponse
    promoted_registration_ids: list[int]


class BatchCancellationResponse(BaseModel):
    cancelled: list[CancellationResponse]
    promoted_registration_ids: list[int]
