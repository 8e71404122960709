"""
Waitlist promotion: backfills freed slots in FIFO order.

Promotion for one event is serialized by locking the event row first
(SELECT ... FOR UPDATE), then claiming the slots through the same guarded
counter UPDATE that single registrations use. Two concurrent promotions
for the same event therefore queue behind each other, and the second one
sees the counter the first one left behind.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.exceptions import NotFoundError
from app.core.logging import get_logger
from app.core.metrics import record_promotions
from app.models.event import Event
from app.models.registration import (
    EventRegistration,
    PaymentStatus,
    RegistrationStatus,
    RegistrationType,
)
from app.services.capacity import claim_slots
from app.services.notification_service import queue_event

logger = get_logger(__name__)


async def lock_event(db: AsyncSession, event_id: int) -> Event:
    """Load an event with its row locked for the rest of the transaction."""
    result = await db.execute(
        select(Event)
        .where(Event.id == event_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    event = result.scalar_one_or_none()
    if event is None:
        raise NotFoundError(f"Event {event_id} not found", event_id=event_id)
    return event


async def get_waitlist(db: AsyncSession, event_id: int, limit: Optional[int] = None) -> list[EventRegistration]:
    """Waitlisted registrations in promotion order."""
    query = (
        select(EventRegistration)
        .where(
            EventRegistration.event_id == event_id,
            EventRegistration.registration_status == RegistrationStatus.WAITLISTED,
        )
        .order_by(EventRegistration.registered_at.asc(), EventRegistration.id.asc())
    )
    if limit is not None:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def promote_from_waitlist(
    db: AsyncSession,
    event_id: int,
    slots: Optional[int] = 1,
    now: Optional[datetime] = None,
) -> list[EventRegistration]:
    """
    Promote up to `slots` waitlisted registrations to CONFIRMED.

    `slots` is the number of newly freed places; None means "as many as
    capacity allows". Never promotes past capacity, and returns an empty
    list when there is nothing to promote.
    """
    if slots is not None and slots <= 0:
        return []

    now = now or utcnow()
    event = await lock_event(db, event_id)

    available = slots
    if event.capacity is not None:
        room = max(event.capacity - event.confirmed_count, 0)
        available = room if slots is None else min(slots, room)
    if available is not None and available <= 0:
        return []

    candidates = await get_waitlist(db, event_id, limit=available)
    if not candidates:
        return []

    if not await claim_slots(db, event_id, count=len(candidates)):
        logger.warning("waitlist_promotion_skipped", event_id=event_id, requested=len(candidates))
        return []

    for registration in candidates:
        registration.registration_status = RegistrationStatus.CONFIRMED
        registration.confirmed_at = now
        registration.promoted_at = now
        if event.is_paid:
            registration.registration_type = RegistrationType.PAID
            if registration.payment_status != PaymentStatus.COMPLETED:
                registration.payment_status = PaymentStatus.PENDING
        else:
            registration.registration_type = RegistrationType.FREE
            registration.payment_status = PaymentStatus.NOT_REQUIRED
    await db.flush()

    record_promotions(len(candidates))
    logger.info(
        "waitlist_promoted",
        event_id=event_id,
        promoted_count=len(candidates),
        registration_ids=[r.id for r in candidates],
    )
    for registration in candidates:
        queue_event(
            db,
            "waitlist_promoted",
            event_id=event_id,
            registration_id=registration.id,
            student_id=registration.student_id,
            payment_required=registration.payment_status == PaymentStatus.PENDING,
        )
    return candidates
