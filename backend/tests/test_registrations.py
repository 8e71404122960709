"""
Tests for the registration state machine, waitlist promotion and refunds,
including concurrency scenarios.
"""

import asyncio
from datetime import datetime, timezone, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.core.config import get_settings
from app.core.exceptions import (
    AlreadyCancelledError,
    CapacityError,
    DuplicateRegistrationError,
    EventFullError,
    InvalidStateError,
    OwnershipError,
    PaymentNotCompletedError,
    ValidationError,
)
from app.db.session import run_with_retry, unit_of_work
from app.models.event import Event, EventStatus, EventType
from app.models.registration import (
    EventRegistration,
    PaymentStatus,
    RefundStatus,
    RegistrationStatus,
    RegistrationType,
)
from app.services import notification_service, registration_service
from app.services.event_service import update_capacity
from app.services.notification_service import pending_events, queue_event
from app.services.registration_service import (
    cancel_registration,
    cancel_registrations,
    complete_payment,
    create_registration,
    force_cancel_registration,
    initiate_payment,
    list_registrations,
)
from app.services.waitlist_service import get_waitlist, promote_from_waitlist

from conftest import add_event, add_students, student_actor


async def register(session_factory, event_id, student_id, *args, **kwargs) -> EventRegistration:
    async with session_factory() as session:
        registration = await create_registration(session, event_id, student_id, *args, **kwargs)
        await session.commit()
        return registration


async def cancel(session_factory, registration_id, actor, provider, **kwargs):
    async with session_factory() as session:
        result = await cancel_registration(session, registration_id, actor, provider=provider, **kwargs)
        await session.commit()
        return result


async def load_event(session_factory, event_id) -> Event:
    async with session_factory() as session:
        return await session.get(Event, event_id)


async def load_registration(session_factory, registration_id) -> EventRegistration:
    async with session_factory() as session:
        return await session.get(EventRegistration, registration_id)


async def paid_registration(session_factory, provider, event_id, student_id) -> EventRegistration:
    async with session_factory() as session:
        order = await initiate_payment(session, event_id, student_id, provider=provider)
        await session.commit()
    provider.settle(order.order_ref)
    return await register(session_factory, event_id, student_id, order.order_ref, provider=provider)


@pytest.mark.asyncio
async def test_free_registration_confirms(session_factory, students, test_event):
    registration = await register(session_factory, test_event.id, students[0].id)

    assert registration.registration_status == RegistrationStatus.CONFIRMED
    assert registration.registration_type == RegistrationType.FREE
    assert registration.payment_status == PaymentStatus.NOT_REQUIRED
    assert registration.confirmed_at is not None

    event = await load_event(session_factory, test_event.id)
    assert event.confirmed_count == 1
    assert event.version == 2


@pytest.mark.asyncio
async def test_full_event_without_waitlist_rejects(session_factory, students):
    event = await add_event(session_factory, capacity=1)
    await register(session_factory, event.id, students[0].id)

    with pytest.raises(EventFullError):
        await register(session_factory, event.id, students[1].id)

    assert (await load_event(session_factory, event.id)).confirmed_count == 1


@pytest.mark.asyncio
async def test_full_event_with_waitlist_waitlists(session_factory, students):
    event = await add_event(session_factory, capacity=1, waitlist_enabled=True)
    await register(session_factory, event.id, students[0].id)

    registration = await register(session_factory, event.id, students[1].id)
    assert registration.registration_status == RegistrationStatus.WAITLISTED
    assert registration.registration_type == RegistrationType.WAITLIST
    assert registration.confirmed_at is None


@pytest.mark.asyncio
async def test_unlimited_capacity(session_factory, students):
    event = await add_event(session_factory, capacity=None)
    for student in students:
        registration = await register(session_factory, event.id, student.id)
        assert registration.registration_status == RegistrationStatus.CONFIRMED
    assert (await load_event(session_factory, event.id)).confirmed_count == len(students)


@pytest.mark.asyncio
async def test_duplicate_registration(session_factory, students, test_event):
    await register(session_factory, test_event.id, students[0].id)
    with pytest.raises(DuplicateRegistrationError):
        await register(session_factory, test_event.id, students[0].id)


@pytest.mark.asyncio
async def test_register_again_after_cancelling(session_factory, students, test_event, payment_provider):
    first = await register(session_factory, test_event.id, students[0].id)
    await cancel(session_factory, first.id, student_actor(students[0]), payment_provider)

    second = await register(session_factory, test_event.id, students[0].id)
    assert second.id != first.id
    assert second.registration_status == RegistrationStatus.CONFIRMED


@pytest.mark.asyncio
async def test_draft_event_rejects_self_registration(session_factory, students):
    event = await add_event(session_factory, status=EventStatus.DRAFT)
    with pytest.raises(InvalidStateError):
        await register(session_factory, event.id, students[0].id)


@pytest.mark.asyncio
async def test_capacity_two_promotion_scenario(session_factory, students, payment_provider):
    """A, B confirmed; C, D waitlisted in order; cancelling A promotes C only."""
    event = await add_event(session_factory, capacity=2, waitlist_enabled=True)
    t = datetime.now(timezone.utc)
    a, b, c, d = students[:4]

    reg_a = await register(session_factory, event.id, a.id, now=t)
    reg_b = await register(session_factory, event.id, b.id, now=t)
    reg_c = await register(session_factory, event.id, c.id, now=t + timedelta(seconds=1))
    reg_d = await register(session_factory, event.id, d.id, now=t + timedelta(seconds=2))

    assert reg_a.registration_status == RegistrationStatus.CONFIRMED
    assert reg_b.registration_status == RegistrationStatus.CONFIRMED
    assert reg_c.registration_status == RegistrationStatus.WAITLISTED
    assert reg_d.registration_status == RegistrationStatus.WAITLISTED

    result = await cancel(session_factory, reg_a.id, student_actor(a), payment_provider)
    assert [r.id for r in result.promoted] == [reg_c.id]

    reg_c = await load_registration(session_factory, reg_c.id)
    reg_d = await load_registration(session_factory, reg_d.id)
    assert reg_c.registration_status == RegistrationStatus.CONFIRMED
    assert reg_c.promoted_at is not None
    assert reg_c.registration_type == RegistrationType.FREE
    assert reg_d.registration_status == RegistrationStatus.WAITLISTED
    assert (await load_event(session_factory, event.id)).confirmed_count == 2


@pytest.mark.asyncio
async def test_cancelling_waitlisted_does_not_promote(session_factory, students, payment_provider):
    event = await add_event(session_factory, capacity=1, waitlist_enabled=True)
    await register(session_factory, event.id, students[0].id)
    waiting = await register(session_factory, event.id, students[1].id)
    later = await register(session_factory, event.id, students[2].id)

    result = await cancel(session_factory, waiting.id, student_actor(students[1]), payment_provider)

    assert result.promoted == []
    assert (await load_registration(session_factory, later.id)).registration_status == RegistrationStatus.WAITLISTED
    assert (await load_event(session_factory, event.id)).confirmed_count == 1


@pytest.mark.asyncio
async def test_promotion_with_nothing_to_promote(session_factory, test_event):
    async with session_factory() as session:
        assert await promote_from_waitlist(session, test_event.id, 1) == []
        assert await promote_from_waitlist(session, test_event.id, 0) == []


@pytest.mark.asyncio
async def test_waitlist_order_breaks_ties_by_id(session_factory, students):
    event = await add_event(session_factory, capacity=1, waitlist_enabled=True)
    t = datetime.now(timezone.utc)
    await register(session_factory, event.id, students[0].id, now=t)
    second = await register(session_factory, event.id, students[1].id, now=t)
    third = await register(session_factory, event.id, students[2].id, now=t)

    async with session_factory() as session:
        waitlist = await get_waitlist(session, event.id)
    assert [r.id for r in waitlist] == [second.id, third.id]


@pytest.mark.asyncio
async def test_concurrent_registrations_never_exceed_capacity(session_factory):
    """Twenty students race for three slots on an event without a waitlist."""
    students = await add_students(session_factory, 20, prefix="RACE")
    event = await add_event(session_factory, capacity=3)

    results = await asyncio.gather(
        *(register(session_factory, event.id, s.id) for s in students),
        return_exceptions=True,
    )

    confirmed = [r for r in results if isinstance(r, EventRegistration)]
    rejected = [r for r in results if isinstance(r, EventFullError)]
    assert len(confirmed) == 3
    assert len(rejected) == 17

    async with session_factory() as session:
        event = await session.get(Event, event.id)
        count = await session.scalar(
            select(func.count(EventRegistration.id)).where(
                EventRegistration.event_id == event.id,
                EventRegistration.registration_status == RegistrationStatus.CONFIRMED,
            )
        )
    assert event.confirmed_count == 3
    assert count == 3


@pytest.mark.asyncio
async def test_concurrent_registrations_overflow_to_waitlist(session_factory):
    students = await add_students(session_factory, 12, prefix="WAIT")
    event = await add_event(session_factory, capacity=4, waitlist_enabled=True)

    results = await asyncio.gather(*(register(session_factory, event.id, s.id) for s in students))

    statuses = [r.registration_status for r in results]
    assert statuses.count(RegistrationStatus.CONFIRMED) == 4
    assert statuses.count(RegistrationStatus.WAITLISTED) == 8
    assert (await load_event(session_factory, event.id)).confirmed_count == 4


@pytest.mark.asyncio
async def test_double_cancel(session_factory, students, test_event, payment_provider):
    registration = await register(session_factory, test_event.id, students[0].id)
    actor = student_actor(students[0])
    await cancel(session_factory, registration.id, actor, payment_provider)

    with pytest.raises(AlreadyCancelledError):
        await cancel(session_factory, registration.id, actor, payment_provider)

    assert (await load_event(session_factory, test_event.id)).confirmed_count == 0


@pytest.mark.asyncio
async def test_student_cannot_cancel_someone_else(session_factory, students, test_event, payment_provider):
    registration = await register(session_factory, test_event.id, students[0].id)
    with pytest.raises(OwnershipError):
        await cancel(session_factory, registration.id, student_actor(students[1]), payment_provider)


@pytest.mark.asyncio
async def test_manager_cancels_on_own_event_only(session_factory, students, test_event, manager, payment_provider):
    other = await add_event(session_factory, organizer_id=999)
    own_reg = await register(session_factory, test_event.id, students[0].id)
    other_reg = await register(session_factory, other.id, students[0].id)

    result = await cancel(session_factory, own_reg.id, manager, payment_provider)
    assert result.registration.cancelled_by_role == "EVENT_MANAGER"

    with pytest.raises(OwnershipError):
        await cancel(session_factory, other_reg.id, manager, payment_provider)


@pytest.mark.asyncio
async def test_paid_registration_requires_payment(session_factory, students, paid_event, payment_provider):
    with pytest.raises(PaymentNotCompletedError):
        await register(session_factory, paid_event.id, students[0].id, provider=payment_provider)

    async with session_factory() as session:
        order = await initiate_payment(session, paid_event.id, students[0].id, provider=payment_provider)

    # Not settled yet
    with pytest.raises(PaymentNotCompletedError):
        await register(
            session_factory, paid_event.id, students[0].id, order.order_ref, provider=payment_provider
        )
    assert (await load_event(session_factory, paid_event.id)).confirmed_count == 0


@pytest.mark.asyncio
async def test_paid_registration_is_idempotent(session_factory, students, paid_event, payment_provider):
    registration = await paid_registration(session_factory, payment_provider, paid_event.id, students[0].id)

    assert registration.registration_status == RegistrationStatus.CONFIRMED
    assert registration.registration_type == RegistrationType.PAID
    assert registration.payment_status == PaymentStatus.COMPLETED
    assert registration.amount_paid == Decimal("1000.00")

    replay = await register(
        session_factory,
        paid_event.id,
        students[0].id,
        registration.payment_order_ref,
        provider=payment_provider,
    )
    assert replay.id == registration.id
    assert (await load_event(session_factory, paid_event.id)).confirmed_count == 1


@pytest.mark.asyncio
async def test_free_event_refuses_payment_order(session_factory, students, test_event, payment_provider):
    async with session_factory() as session:
        with pytest.raises(ValidationError):
            await initiate_payment(session, test_event.id, students[0].id, provider=payment_provider)


@pytest.mark.asyncio
async def test_paid_race_without_waitlist_refunds_payment(
    session_factory, students, payment_provider, monkeypatch
):
    """The event filled between verification and the slot claim."""
    event = await add_event(
        session_factory, event_type=EventType.PAID, price=Decimal("300.00"), capacity=1
    )
    async with session_factory() as session:
        order = await initiate_payment(session, event.id, students[0].id, provider=payment_provider)
    payment_provider.settle(order.order_ref)

    async def lost_race(*args, **kwargs):
        return False

    monkeypatch.setattr(registration_service, "claim_slots", lost_race)

    with pytest.raises(EventFullError):
        await register(session_factory, event.id, students[0].id, order.order_ref, provider=payment_provider)

    assert f"unplaced-{order.order_ref}" in payment_provider.refunds


@pytest.mark.asyncio
async def test_paid_race_with_waitlist_keeps_payment(session_factory, students, paid_event, payment_provider, monkeypatch):
    async def lost_race(*args, **kwargs):
        return False

    monkeypatch.setattr(registration_service, "claim_slots", lost_race)
    registration = await paid_registration(session_factory, payment_provider, paid_event.id, students[0].id)

    assert registration.registration_status == RegistrationStatus.WAITLISTED
    assert registration.payment_status == PaymentStatus.COMPLETED
    assert payment_provider.refunds == {}


async def settled_order(session_factory, provider, event_id, student_id, succeeded=True) -> str:
    async with session_factory() as session:
        order = await initiate_payment(session, event_id, student_id, provider=provider)
    provider.settle(order.order_ref, succeeded=succeeded)
    return order.order_ref


@pytest.mark.asyncio
async def test_payment_for_full_event_without_waitlist_is_refunded(session_factory, students, payment_provider):
    event = await add_event(
        session_factory, event_type=EventType.PAID, price=Decimal("300.00"), capacity=1
    )
    await paid_registration(session_factory, payment_provider, event.id, students[0].id)
    order_ref = await settled_order(session_factory, payment_provider, event.id, students[1].id)

    with pytest.raises(EventFullError):
        await register(session_factory, event.id, students[1].id, order_ref, provider=payment_provider)

    receipt = payment_provider.refunds[f"unplaced-{order_ref}"]
    assert receipt.amount == Decimal("300.00")


@pytest.mark.asyncio
async def test_payment_for_full_event_is_kept_on_the_waitlist(session_factory, students, payment_provider):
    event = await add_event(
        session_factory,
        event_type=EventType.PAID,
        price=Decimal("300.00"),
        capacity=1,
        waitlist_enabled=True,
        refund_enabled=True,
        cancellation_deadline_hours=0,
        refund_tiers=[{"days_before": 7, "percent": 100}, {"days_before": 3, "percent": 50}],
    )
    await paid_registration(session_factory, payment_provider, event.id, students[0].id)
    order_ref = await settled_order(session_factory, payment_provider, event.id, students[1].id)

    waiting = await register(session_factory, event.id, students[1].id, order_ref, provider=payment_provider)
    assert waiting.registration_status == RegistrationStatus.WAITLISTED
    assert waiting.payment_status == PaymentStatus.COMPLETED
    assert waiting.amount_paid == Decimal("300.00")
    assert payment_provider.refunds == {}

    # Inside the 50% tier, but a waitlisted payer never held a seat
    result = await cancel(
        session_factory,
        waiting.id,
        student_actor(students[1]),
        payment_provider,
        now=event.start_date - timedelta(days=5),
    )
    assert result.refund.eligible is True
    assert result.refund.percent == 100
    cancelled = await load_registration(session_factory, waiting.id)
    assert cancelled.refund_status == RefundStatus.PROCESSED
    assert cancelled.refund_amount == Decimal("300.00")
    assert payment_provider.refunds[f"refund-{waiting.id}"].amount == Decimal("300.00")


@pytest.mark.asyncio
async def test_unpaid_order_for_full_event_still_waitlists(session_factory, students, payment_provider):
    event = await add_event(
        session_factory, event_type=EventType.PAID, price=Decimal("300.00"), capacity=1, waitlist_enabled=True
    )
    await paid_registration(session_factory, payment_provider, event.id, students[0].id)
    async with session_factory() as session:
        order = await initiate_payment(session, event.id, students[1].id, provider=payment_provider)

    waiting = await register(session_factory, event.id, students[1].id, order.order_ref, provider=payment_provider)
    assert waiting.registration_status == RegistrationStatus.WAITLISTED
    assert waiting.payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_race_waitlisted_payer_gets_full_refund(session_factory, students, paid_event, payment_provider, monkeypatch):
    async def lost_race(*args, **kwargs):
        return False

    monkeypatch.setattr(registration_service, "claim_slots", lost_race)
    registration = await paid_registration(session_factory, payment_provider, paid_event.id, students[0].id)

    result = await cancel(
        session_factory,
        registration.id,
        student_actor(students[0]),
        payment_provider,
        now=paid_event.start_date - timedelta(days=1),
    )
    assert result.refund.percent == 100
    assert result.registration.refund_amount == Decimal("1000.00")


@pytest.mark.asyncio
async def test_cancel_paid_registration_refunds_by_tier(session_factory, students, paid_event, payment_provider):
    registration = await paid_registration(session_factory, payment_provider, paid_event.id, students[0].id)

    result = await cancel(session_factory, registration.id, student_actor(students[0]), payment_provider)

    assert result.refund.eligible is True
    assert result.refund.percent == 100
    cancelled = await load_registration(session_factory, registration.id)
    assert cancelled.registration_status == RegistrationStatus.CANCELLED
    assert cancelled.refund_status == RefundStatus.PROCESSED
    assert cancelled.refund_amount == Decimal("1000.00")
    assert cancelled.payment_status == PaymentStatus.REFUNDED
    assert f"refund-{registration.id}" in payment_provider.refunds


@pytest.mark.asyncio
async def test_cancel_close_to_event_gets_partial_refund(session_factory, students, paid_event, payment_provider):
    registration = await paid_registration(session_factory, payment_provider, paid_event.id, students[0].id)
    five_days_before = paid_event.start_date - timedelta(days=5)

    result = await cancel(
        session_factory,
        registration.id,
        student_actor(students[0]),
        payment_provider,
        now=five_days_before,
    )
    assert result.refund.percent == 50
    assert result.registration.refund_amount == Decimal("500.00")


@pytest.mark.asyncio
async def test_force_cancel_with_override(session_factory, students, paid_event, payment_provider, admin):
    registration = await paid_registration(session_factory, payment_provider, paid_event.id, students[0].id)

    async with session_factory() as session:
        with pytest.raises(ValidationError):
            await force_cancel_registration(
                session, registration.id, admin, override_amount=Decimal("1500"), provider=payment_provider
            )

    async with session_factory() as session:
        result = await force_cancel_registration(
            session,
            registration.id,
            admin,
            override_amount=Decimal("250"),
            reason="Duplicate payment",
            provider=payment_provider,
        )
        await session.commit()

    assert result.refund.amount == Decimal("250")
    assert result.refund.percent == 25
    cancelled = await load_registration(session_factory, registration.id)
    assert cancelled.refund_amount == Decimal("250.00")
    assert cancelled.cancelled_by_role == "ADMIN"
    assert cancelled.cancellation_reason == "Duplicate payment"


@pytest.mark.asyncio
async def test_force_cancel_defaults_to_full_refund(session_factory, students, paid_event, payment_provider, admin):
    registration = await paid_registration(session_factory, payment_provider, paid_event.id, students[0].id)
    # Inside the last tier, where the policy would refund nothing
    the_day_before = paid_event.start_date - timedelta(hours=20)

    async with session_factory() as session:
        result = await force_cancel_registration(
            session, registration.id, admin, provider=payment_provider, now=the_day_before
        )
        await session.commit()

    assert result.registration.refund_amount == Decimal("1000.00")
    assert result.registration.refund_status == RefundStatus.PROCESSED


@pytest.mark.asyncio
async def test_force_cancel_requires_admin(session_factory, students, paid_event, payment_provider, manager):
    registration = await paid_registration(session_factory, payment_provider, paid_event.id, students[0].id)
    async with session_factory() as session:
        with pytest.raises(OwnershipError):
            await force_cancel_registration(session, registration.id, manager, provider=payment_provider)


@pytest.mark.asyncio
async def test_promoted_paid_registration_completes_payment(session_factory, students, payment_provider):
    event = await add_event(
        session_factory, event_type=EventType.PAID, price=Decimal("200.00"), capacity=1, waitlist_enabled=True
    )
    first = await paid_registration(session_factory, payment_provider, event.id, students[0].id)
    waiting = await register(session_factory, event.id, students[1].id, provider=payment_provider)
    assert waiting.registration_status == RegistrationStatus.WAITLISTED
    assert waiting.payment_status == PaymentStatus.PENDING

    await cancel(session_factory, first.id, student_actor(students[0]), payment_provider)
    promoted = await load_registration(session_factory, waiting.id)
    assert promoted.registration_status == RegistrationStatus.CONFIRMED
    assert promoted.registration_type == RegistrationType.PAID
    assert promoted.payment_status == PaymentStatus.PENDING

    async with session_factory() as session:
        order = await initiate_payment(session, event.id, students[1].id, provider=payment_provider)
        await session.commit()
    payment_provider.settle(order.order_ref)

    async with session_factory() as session:
        paid = await complete_payment(
            session, waiting.id, order.order_ref, student_actor(students[1]), provider=payment_provider
        )
        await session.commit()
    assert paid.payment_status == PaymentStatus.COMPLETED
    assert paid.amount_paid == Decimal("200.00")


@pytest.mark.asyncio
async def test_failed_payment_after_promotion_frees_the_slot(session_factory, students, payment_provider):
    event = await add_event(
        session_factory, event_type=EventType.PAID, price=Decimal("200.00"), capacity=1, waitlist_enabled=True
    )
    first = await paid_registration(session_factory, payment_provider, event.id, students[0].id)
    second = await register(session_factory, event.id, students[1].id, provider=payment_provider)
    third = await register(session_factory, event.id, students[2].id, provider=payment_provider)
    await cancel(session_factory, first.id, student_actor(students[0]), payment_provider)

    async with session_factory() as session:
        order = await initiate_payment(session, event.id, students[1].id, provider=payment_provider)
        await session.commit()
    payment_provider.settle(order.order_ref, succeeded=False)

    async with session_factory() as session:
        failed = await complete_payment(
            session, second.id, order.order_ref, student_actor(students[1]), provider=payment_provider
        )
        await session.commit()

    assert failed.registration_status == RegistrationStatus.CANCELLED
    assert failed.payment_status == PaymentStatus.FAILED
    assert failed.cancelled_by_role == "SYSTEM"
    assert (await load_registration(session_factory, third.id)).registration_status == RegistrationStatus.CONFIRMED
    assert (await load_event(session_factory, event.id)).confirmed_count == 1


@pytest.mark.asyncio
async def test_complete_payment_on_settled_registration(session_factory, students, paid_event, payment_provider):
    registration = await paid_registration(session_factory, payment_provider, paid_event.id, students[0].id)
    async with session_factory() as session:
        with pytest.raises(InvalidStateError):
            await complete_payment(
                session, registration.id, "order_other", student_actor(students[0]), provider=payment_provider
            )


@pytest.mark.asyncio
async def test_batch_cancel_backfills_each_freed_slot(session_factory, students, admin, payment_provider):
    event = await add_event(session_factory, capacity=2, waitlist_enabled=True)
    regs = [await register(session_factory, event.id, s.id) for s in students[:5]]

    async with session_factory() as session:
        result = await cancel_registrations(
            session, [regs[0].id, regs[1].id], admin, "Venue change", provider=payment_provider
        )
        await session.commit()

    assert len(result.cancelled) == 2
    assert [r.id for r in result.promoted] == [regs[2].id, regs[3].id]
    assert (await load_registration(session_factory, regs[4].id)).registration_status == RegistrationStatus.WAITLISTED
    assert (await load_event(session_factory, event.id)).confirmed_count == 2


@pytest.mark.asyncio
async def test_batch_cancel_is_all_or_nothing(session_factory, students, test_event, payment_provider):
    mine = await register(session_factory, test_event.id, students[0].id)
    theirs = await register(session_factory, test_event.id, students[1].id)

    async with session_factory() as session:
        with pytest.raises(OwnershipError):
            await cancel_registrations(
                session, [mine.id, theirs.id], student_actor(students[0]), provider=payment_provider
            )
        await session.rollback()

    assert (await load_registration(session_factory, mine.id)).registration_status == RegistrationStatus.CONFIRMED
    assert (await load_event(session_factory, test_event.id)).confirmed_count == 2


@pytest.mark.asyncio
async def test_capacity_growth_promotes(session_factory, students, manager):
    event = await add_event(session_factory, capacity=1, waitlist_enabled=True)
    regs = [await register(session_factory, event.id, s.id) for s in students[:4]]

    async with session_factory() as session:
        updated, promoted = await update_capacity(session, event.id, 3, manager)
        await session.commit()

    assert [r.id for r in promoted] == [regs[1].id, regs[2].id]
    assert updated.capacity == 3
    assert updated.confirmed_count == 3


@pytest.mark.asyncio
async def test_capacity_shrink_needs_force(session_factory, students, manager):
    event = await add_event(session_factory, capacity=5)
    for s in students[:3]:
        await register(session_factory, event.id, s.id)

    async with session_factory() as session:
        with pytest.raises(CapacityError):
            await update_capacity(session, event.id, 2, manager)

    async with session_factory() as session:
        updated, promoted = await update_capacity(session, event.id, 2, manager, force=True)
        await session.commit()
    assert updated.capacity == 2
    assert updated.confirmed_count == 3
    assert promoted == []


@pytest.mark.asyncio
async def test_list_registrations_is_scoped(session_factory, students, test_event, manager, admin):
    other = await add_event(session_factory, organizer_id=999)
    await register(session_factory, test_event.id, students[0].id)
    await register(session_factory, other.id, students[0].id)
    await register(session_factory, other.id, students[1].id)

    async with session_factory() as session:
        assert len(await list_registrations(session, admin)) == 3
        assert len(await list_registrations(session, manager)) == 1
        assert len(await list_registrations(session, student_actor(students[0]))) == 2
        assert len(await list_registrations(session, student_actor(students[1]), event_id=test_event.id)) == 0


@pytest.fixture
def published(monkeypatch) -> list:
    sent = []

    async def record(kind, at=None, **payload):
        sent.append((kind, payload))

    monkeypatch.setattr(notification_service, "publish_event", record)
    return sent


@pytest.mark.asyncio
async def test_notifications_go_out_after_commit(session_factory, students, test_event, published):
    async with unit_of_work(session_factory) as session:
        registration = await create_registration(session, test_event.id, students[0].id)
        assert [kind for kind, _, _ in pending_events(session)] == ["registration_confirmed"]
        assert published == []

    assert len(published) == 1
    kind, payload = published[0]
    assert kind == "registration_confirmed"
    assert payload["registration_id"] == registration.id
    assert payload["event_id"] == test_event.id


@pytest.mark.asyncio
async def test_rolled_back_registration_is_never_announced(session_factory, students, test_event, published):
    with pytest.raises(RuntimeError):
        async with unit_of_work(session_factory) as session:
            await create_registration(session, test_event.id, students[0].id)
            raise RuntimeError("handler failed after the service returned")

    assert published == []
    async with session_factory() as session:
        stored = await session.scalar(select(func.count()).select_from(EventRegistration))
    assert stored == 0
    assert (await load_event(session_factory, test_event.id)).confirmed_count == 0


@pytest.mark.asyncio
async def test_retried_savepoint_forgets_its_notifications(db_session, monkeypatch):
    monkeypatch.setattr(get_settings(), "STORE_RETRY_BACKOFF_SECONDS", 0)
    queue_event(db_session, "earlier", step=0)
    calls = []

    async def operation():
        calls.append(1)
        queue_event(db_session, "attempt", step=len(calls))
        if len(calls) == 1:
            raise OperationalError("UPDATE events", {}, Exception("database is locked"))
        return "done"

    assert await run_with_retry(db_session, operation, "notify") == "done"
    assert [(kind, payload) for kind, _, payload in pending_events(db_session)] == [
        ("earlier", {"step": 0}),
        ("attempt", {"step": 2}),
    ]
