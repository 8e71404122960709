"""
Registration endpoints: payment sub-step, create, cancel.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.models.registration import RegistrationStatus
from app.schemas.event import RefundQuoteResponse
from app.schemas.registration import (
    BatchCancelRequest,
    BatchCancellationResponse,
    CancellationResponse,
    CancelRequest,
    ForceCancelRequest,
    PaymentComplete,
    PaymentInitiate,
    PaymentOrderResponse,
    RegistrationCreate,
    RegistrationResponse,
)
from app.services.actors import Actor, AdminActor, StudentActor
from app.services.interfaces.payment import PaymentProvider
from app.services.provider_factory import get_payment_provider
from app.services.registration_service import (
    CancellationResult,
    cancel_registration,
    cancel_registrations,
    complete_payment,
    create_registration,
    force_cancel_registration,
    initiate_payment,
    list_registrations,
)
from app.core.security import get_current_actor, require_admin, require_student

router = APIRouter(prefix="/registrations", tags=["Registrations"])


def _cancellation_response(result: CancellationResult) -> CancellationResponse:
    return CancellationResponse(
        registration=RegistrationResponse.model_validate(result.registration),
        refund=RefundQuoteResponse(**result.refund.as_dict()),
        promoted_registration_ids=[r.id for r in result.promoted],
    )


@router.post("/payments", response_model=PaymentOrderResponse, status_code=status.HTTP_201_CREATED)
async def initiate_payment_endpoint(
    payload: PaymentInitiate,
    student: StudentActor = Depends(require_student),
    provider: PaymentProvider = Depends(get_payment_provider),
    db: AsyncSession = Depends(get_db),
):
    """Open a payment order for a paid event. Pay it, then register with its order_ref."""
    order = await initiate_payment(db, payload.event_id, student.actor_id, provider=provider)
    return PaymentOrderResponse(order_ref=order.order_ref, amount=order.amount, currency=order.currency)


@router.post("", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
async def create_registration_endpoint(
    payload: RegistrationCreate,
    student: StudentActor = Depends(require_student),
    provider: PaymentProvider = Depends(get_payment_provider),
    db: AsyncSession = Depends(get_db),
):
    """
    Register for an event. Confirmed while capacity lasts, waitlisted after
    that (when the event has a waitlist). Replaying the same payment
    reference returns the existing registration.
    """
    return await create_registration(
        db, payload.event_id, student.actor_id, payload.payment_ref, provider=provider
    )


@router.get("", response_model=list[RegistrationResponse])
async def list_registrations_endpoint(
    event_id: Optional[int] = Query(None),
    registration_status: Optional[RegistrationStatus] = Query(None, alias="status"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await list_registrations(db, actor, event_id=event_id, status=registration_status)


@router.post("/{registration_id}/payment", response_model=RegistrationResponse)
async def complete_payment_endpoint(
    registration_id: int,
    payload: PaymentComplete,
    actor: Actor = Depends(get_current_actor),
    provider: PaymentProvider = Depends(get_payment_provider),
    db: AsyncSession = Depends(get_db),
):
    """Settle payment for a registration promoted from a paid event's waitlist."""
    return await complete_payment(db, registration_id, payload.payment_ref, actor, provider=provider)


@router.post("/{registration_id}/cancel", response_model=CancellationResponse)
async def cancel_registration_endpoint(
    registration_id: int,
    payload: Optional[CancelRequest] = None,
    actor: Actor = Depends(get_current_actor),
    provider: PaymentProvider = Depends(get_payment_provider),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a registration; the refund follows the event's refund tiers."""
    reason = payload.reason if payload else None
    result = await cancel_registration(db, registration_id, actor, reason, provider=provider)
    return _cancellation_response(result)


@router.post("/{registration_id}/force-cancel", response_model=CancellationResponse)
async def force_cancel_endpoint(
    registration_id: int,
    payload: ForceCancelRequest,
    admin: AdminActor = Depends(require_admin),
    provider: PaymentProvider = Depends(get_payment_provider),
    db: AsyncSession = Depends(get_db),
):
    """Admin cancellation with an optional refund override (full refund if omitted)."""
    result = await force_cancel_registration(
        db,
        registration_id,
        admin,
        override_amount=payload.override_amount,
        reason=payload.reason,
        provider=provider,
    )
    return _cancellation_response(result)


@router.post("/cancel-batch", response_model=BatchCancellationResponse)
async def cancel_batch_endpoint(
    payload: BatchCancelRequest,
    actor: Actor = Depends(get_current_actor),
    provider: PaymentProvider = Depends(get_payment_provider),
    db: AsyncSession = Depends(get_db),
):
    """Cancel several registrations at once; all succeed or none do."""
    result = await cancel_registrations(
        db, payload.registration_ids, actor, payload.reason, provider=provider
    )
    return BatchCancellationResponse(
        cancelled=[_cancellation_response(r) for r in result.cancelled],
        promoted_registration_ids=[r.id for r in result.promoted],
    )
