"""
Event service: creation, lookup, capacity changes and refund previews.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import ensure_utc, utcnow
from app.core.config import get_settings
from app.core.exceptions import CapacityError, NotFoundError, ValidationError
from app.core.logging import get_logger
from app.db.session import run_with_retry
from app.models.event import Event
from app.models.registration import EventRegistration
from app.schemas.event import EventCreate
from app.services.actors import Actor
from app.services.refund_calculator import RefundPolicy, RefundQuote, calculate_refund, validate_refund_tiers
from app.services.waitlist_service import get_waitlist, lock_event, promote_from_waitlist

logger = get_logger(__name__)


async def create_event(db: AsyncSession, event_data: EventCreate, actor: Actor, now: Optional[datetime] = None) -> Event:
    """Create an event; refund tiers are validated and stored sorted by days_before descending."""
    organizer_id = actor.organizer_for_new_event(event_data.organizer_id)

    if ensure_utc(event_data.start_date) <= (now or utcnow()):
        raise ValidationError("Event start date must be in the future")

    tiers = [tier.model_dump() for tier in event_data.refund_tiers]
    error = validate_refund_tiers(tiers)
    if error:
        raise ValidationError(error, refund_tiers=tiers)
    tiers.sort(key=lambda t: t["days_before"], reverse=True)

    deadline = event_data.cancellation_deadline_hours
    if deadline is None:
        deadline = get_settings().DEFAULT_CANCELLATION_DEADLINE_HOURS

    event = Event(
        title=event_data.title,
        event_type=event_data.event_type,
        price=event_data.price,
        currency=event_data.currency,
        start_date=event_data.start_date,
        status=event_data.status,
        organizer_id=organizer_id,
        capacity=event_data.capacity,
        confirmed_count=0,
        waitlist_enabled=event_data.waitlist_enabled,
        refund_enabled=event_data.refund_enabled,
        cancellation_deadline_hours=deadline,
        refund_tiers=tiers,
        version=1,
    )
    db.add(event)
    await db.flush()
    await db.refresh(event)

    logger.info(
        "event_created",
        event_id=event.id,
        title=event.title,
        event_type=event.event_type.value,
        capacity=event.capacity,
        organizer_id=organizer_id,
    )
    return event


async def get_event(db: AsyncSession, event_id: int) -> Event:
    """Get a single event by ID with fresh counters."""
    result = await db.execute(
        select(Event).where(Event.id == event_id).execution_options(populate_existing=True)
    )
    event = result.scalar_one_or_none()

    if not event:
        raise NotFoundError(f"Event {event_id} not found", event_id=event_id)
    return event


async def update_capacity(
    db: AsyncSession,
    event_id: int,
    new_capacity: Optional[int],
    actor: Actor,
    force: bool = False,
    now: Optional[datetime] = None,
) -> tuple[Event, list[EventRegistration]]:
    """
    Change an event's capacity (None = unlimited).

    Shrinking below the confirmed count is refused unless `force` is set;
    confirmed registrations are never bumped, the event just stays over
    capacity until cancellations bring it back. Growth backfills from the
    waitlist.
    """
    async def _resize() -> Optional[int]:
        event = await lock_event(db, event_id)
        actor.authorize_event(event)

        old_capacity = event.capacity
        if new_capacity is not None and new_capacity < event.confirmed_count and not force:
            raise CapacityError(
                f"Cannot reduce capacity to {new_capacity}: {event.confirmed_count} registrations are confirmed.",
                confirmed_count=event.confirmed_count,
                requested_capacity=new_capacity,
            )

        event.capacity = new_capacity
        event.version = event.version + 1
        await db.flush()

        logger.info(
            "event_capacity_updated",
            event_id=event_id,
            old_capacity=old_capacity,
            new_capacity=new_capacity,
            forced=force and new_capacity is not None and new_capacity < event.confirmed_count,
        )
        return old_capacity

    old_capacity = await run_with_retry(db, _resize, "update_capacity")

    promoted = []
    grew = new_capacity is None or (old_capacity is not None and new_capacity > old_capacity)
    if grew:
        slots = None if new_capacity is None or old_capacity is None else new_capacity - old_capacity
        promoted = await run_with_retry(
            db,
            lambda: promote_from_waitlist(db, event_id, slots, now=now),
            "promote_from_waitlist",
        )

    return await get_event(db, event_id), promoted


async def get_event_waitlist(db: AsyncSession, event_id: int, actor: Actor) -> list[EventRegistration]:
    event = await get_event(db, event_id)
    actor.authorize_event(event)
    return await get_waitlist(db, event_id)


async def get_refund_quote(db: AsyncSession, event_id: int, as_of: Optional[datetime] = None) -> RefundQuote:
    """Preview the refund a cancellation would get right now at list price. Read-only."""
    event = await get_event(db, event_id)
    return calculate_refund(RefundPolicy.from_event(event), as_of=as_of)
