"""
Event endpoints: creation, capacity changes, waitlist and refund preview.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.schemas.event import (
    CapacityUpdate,
    CapacityUpdateResponse,
    EventCreate,
    EventResponse,
    RefundQuoteResponse,
)
from app.schemas.registration import RegistrationResponse
from app.services.actors import Actor
from app.services.event_service import (
    create_event,
    get_event,
    get_event_waitlist,
    get_refund_quote,
    update_capacity,
)
from app.core.security import get_current_actor

router = APIRouter(prefix="/events", tags=["Events"])


@router.post("", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def create_event_endpoint(
    event_data: EventCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Create an event. Admins and event managers only."""
    return await create_event(db, event_data, actor)


@router.get("/{event_id}", response_model=EventResponse)
async def get_event_endpoint(
    event_id: int,
    db: AsyncSession = Depends(get_db),
):
    """Get a single event with live registration counters."""
    return await get_event(db, event_id)


@router.patch("/{event_id}/capacity", response_model=CapacityUpdateResponse)
async def update_capacity_endpoint(
    event_id: int,
    payload: CapacityUpdate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """
    Change capacity. Growth promotes waitlisted students in FIFO order;
    shrinking below the confirmed count needs `force`.
    """
    event, promoted = await update_capacity(db, event_id, payload.capacity, actor, force=payload.force)
    return CapacityUpdateResponse(
        event=EventResponse.model_validate(event),
        promoted_registration_ids=[r.id for r in promoted],
    )


@router.get("/{event_id}/waitlist", response_model=list[RegistrationResponse])
async def waitlist_endpoint(
    event_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Waitlisted registrations in promotion order."""
    return await get_event_waitlist(db, event_id, actor)


@router.get("/{event_id}/refund-quote", response_model=RefundQuoteResponse)
async def refund_quote_endpoint(
    event_id: int,
    db: AsyncSession = Depends(get_db),
):
    """What a cancellation right now would refund at list price. Read-only."""
    quote = await get_refund_quote(db, event_id)
    return RefundQuoteResponse(**quote.as_dict())
