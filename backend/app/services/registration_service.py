"""
Registration lifecycle: create, pay, cancel.

STATE MACHINE
=============

    PENDING --(slot claimed)--> CONFIRMED --cancel--> CANCELLED
       |                            ^
       +--(event full)--> WAITLISTED +--promotion (waitlist_service)
                              |
                              +--cancel--> CANCELLED

PENDING only exists while a registration is being created and is never
committed. CANCELLED is terminal. Rows are never deleted.

Capacity is enforced by services.capacity.claim_slots, the only code path
that increments events.confirmed_count. Paid registrations must present a
verified payment before a slot is claimed; if the event fills up between
verification and the claim, the registration is waitlisted with its
payment kept, so the next promotion does not ask for payment again. A
payment presented for an event that is already full is verified as well:
it rides along onto the waitlist, or is refunded when there is none.
Cancelling a paid-up waitlisted registration refunds it in full.

Cancellation and refund eligibility are decoupled: cancelling is always
allowed from CONFIRMED or WAITLISTED, RefundCalculator decides the money.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.exceptions import (
    AlreadyCancelledError,
    DuplicateRegistrationError,
    EventFullError,
    InvalidStateError,
    NotFoundError,
    PaymentNotCompletedError,
    PaymentProviderError,
    ValidationError,
)
from app.core.logging import get_audit_logger, get_logger
from app.core.metrics import (
    record_cancellation,
    record_refund,
    record_registration,
    registration_latency,
)
from app.db.session import run_with_retry
from app.models.event import OPEN_FOR_REGISTRATION, Event
from app.models.registration import (
    EventRegistration,
    PaymentStatus,
    RefundStatus,
    RegistrationStatus,
    RegistrationType,
)
from app.models.student import Student
from app.services.actors import Actor
from app.services.capacity import claim_slots, release_slots
from app.services.interfaces.payment import (
    PaymentOrder,
    PaymentProvider,
    PaymentVerification,
    ProviderPaymentStatus,
)
from app.services.notification_service import queue_event
from app.services.refund_calculator import RefundPolicy, RefundQuote, calculate_refund
from app.services.waitlist_service import promote_from_waitlist

logger = get_logger(__name__)
audit_logger = get_audit_logger(__name__)

ZERO = Decimal("0.00")


@dataclass
class CancellationResult:
    registration: EventRegistration
    refund: RefundQuote
    promoted: list[EventRegistration] = field(default_factory=list)


@dataclass
class BatchCancellationResult:
    cancelled: list[CancellationResult]
    promoted: list[EventRegistration]


async def get_event_for_registration(db: AsyncSession, event_id: int) -> Event:
    result = await db.execute(
        select(Event).where(Event.id == event_id).execution_options(populate_existing=True)
    )
    event = result.scalar_one_or_none()
    if event is None:
        raise NotFoundError(f"Event {event_id} not found", event_id=event_id)
    return event


async def get_registration(db: AsyncSession, registration_id: int, lock: bool = False) -> EventRegistration:
    query = select(EventRegistration).where(EventRegistration.id == registration_id)
    if lock:
        query = query.with_for_update()
    result = await db.execute(query.execution_options(populate_existing=True))
    registration = result.scalar_one_or_none()
    if registration is None:
        raise NotFoundError(f"Registration {registration_id} not found", registration_id=registration_id)
    return registration


async def find_active_registration(db: AsyncSession, event_id: int, student_id: int) -> Optional[EventRegistration]:
    result = await db.execute(
        select(EventRegistration).where(
            EventRegistration.event_id == event_id,
            EventRegistration.student_id == student_id,
            EventRegistration.registration_status != RegistrationStatus.CANCELLED,
        )
    )
    return result.scalar_one_or_none()


async def list_registrations(
    db: AsyncSession,
    actor: Actor,
    event_id: Optional[int] = None,
    status: Optional[RegistrationStatus] = None,
) -> list[EventRegistration]:
    """Registrations visible to the actor: students see their own, managers their events'."""
    query = actor.visible_registrations(select(EventRegistration))
    if event_id is not None:
        query = query.where(EventRegistration.event_id == event_id)
    if status is not None:
        query = query.where(EventRegistration.registration_status == status)

    result = await db.execute(
        query.order_by(EventRegistration.registered_at.asc(), EventRegistration.id.asc())
    )
    return list(result.scalars().all())


async def initiate_payment(
    db: AsyncSession,
    event_id: int,
    student_id: int,
    *,
    provider: PaymentProvider,
) -> PaymentOrder:
    """
    Open a payment order for a paid event.

    A student whose waitlisted registration was promoted (CONFIRMED with
    payment PENDING) gets the order attached to that registration.
    """
    event = await get_event_for_registration(db, event_id)
    if not event.is_paid:
        raise ValidationError("This event is free; no payment is required.", event_id=event_id)
    if event.status not in OPEN_FOR_REGISTRATION:
        raise InvalidStateError(
            f"Event status {event.status.value} does not accept registrations.",
            event_status=event.status.value,
        )
    if await db.get(Student, student_id) is None:
        raise NotFoundError(f"Student {student_id} not found", student_id=student_id)

    existing = await find_active_registration(db, event_id, student_id)
    if existing is not None and existing.payment_status == PaymentStatus.COMPLETED:
        raise DuplicateRegistrationError(
            "You have already paid for this event.",
            registration_id=existing.id,
        )

    order = await provider.initiate(
        Decimal(event.price),
        event.currency,
        {"event_id": event_id, "student_id": student_id},
    )
    if existing is not None:
        existing.payment_order_ref = order.order_ref
        await db.flush()

    logger.info("payment_initiated", event_id=event_id, student_id=student_id, order_ref=order.order_ref)
    return order


async def _verify_payment(provider: PaymentProvider, payment_ref: Optional[str]) -> PaymentVerification:
    if not payment_ref:
        raise PaymentNotCompletedError("Payment is required for this event.")
    verification = await provider.verify(payment_ref)
    if not verification.completed:
        raise PaymentNotCompletedError(
            "Payment has not been completed.",
            payment_ref=payment_ref,
            payment_status=verification.status,
        )
    return verification


async def create_registration(
    db: AsyncSession,
    event_id: int,
    student_id: int,
    payment_ref: Optional[str] = None,
    *,
    provider: Optional[PaymentProvider] = None,
    now: Optional[datetime] = None,
    accepting=OPEN_FOR_REGISTRATION,
    prepaid: bool = False,
    allow_overflow: bool = False,
    bulk_log_id: Optional[int] = None,
) -> EventRegistration:
    """
    Register a student for an event.

    Returns the existing registration when the same payment order is
    presented twice (verify-after-initiate retries). `prepaid`,
    `allow_overflow` and `accepting` are used by bulk registration: fees
    are collected offline, admins may override capacity, and bulk uploads
    may seed events that are not yet published.
    """
    now = now or utcnow()
    with registration_latency.time():
        event = await get_event_for_registration(db, event_id)
        if event.status not in accepting:
            record_registration("rejected")
            raise InvalidStateError(
                f"Event status {event.status.value} does not accept registrations.",
                event_status=event.status.value,
            )
        if await db.get(Student, student_id) is None:
            raise NotFoundError(f"Student {student_id} not found", student_id=student_id)

        existing = await find_active_registration(db, event_id, student_id)
        if existing is not None:
            if payment_ref and existing.payment_order_ref == payment_ref:
                logger.info("registration_replayed", registration_id=existing.id, payment_ref=payment_ref)
                return existing
            record_registration("rejected")
            raise DuplicateRegistrationError(
                "Student is already registered for this event.",
                registration_id=existing.id,
                registration_status=existing.registration_status.value,
            )

        verification = None
        needs_payment = event.is_paid and not prepaid
        if needs_payment and not event.is_full:
            verification = await _verify_payment(provider, payment_ref)
        elif needs_payment and payment_ref:
            # Full: a waitlist spot needs no payment, but money already taken is kept or returned
            presented = await provider.verify(payment_ref)
            if presented.completed:
                verification = presented

        if event.is_full and not event.waitlist_enabled and not allow_overflow:
            record_registration("rejected")
            if verification is not None:
                await _refund_unused_payment(provider, verification, event_id, student_id)
            raise EventFullError("Event is full.", event_id=event_id, capacity=event.capacity)

        async def _claim_and_insert() -> EventRegistration:
            may_confirm = not needs_payment or verification is not None
            claimed = may_confirm and await claim_slots(db, event_id, allow_overflow=allow_overflow)
            if not claimed and not event.waitlist_enabled:
                raise EventFullError("Event is full.", event_id=event_id, capacity=event.capacity)

            registration = EventRegistration(
                event_id=event_id,
                student_id=student_id,
                registered_at=now,
                payment_order_ref=payment_ref,
                bulk_log_id=bulk_log_id,
                amount_paid=ZERO,
            )
            if claimed:
                registration.registration_status = RegistrationStatus.CONFIRMED
                registration.registration_type = RegistrationType.PAID if event.is_paid else RegistrationType.FREE
                registration.confirmed_at = now
            else:
                registration.registration_status = RegistrationStatus.WAITLISTED
                registration.registration_type = RegistrationType.WAITLIST

            if not event.is_paid:
                registration.payment_status = PaymentStatus.NOT_REQUIRED
            elif verification is not None:
                registration.payment_status = PaymentStatus.COMPLETED
                registration.payment_ref = verification.payment_ref
                registration.amount_paid = verification.amount if verification.amount is not None else event.price
            elif prepaid:
                registration.payment_status = PaymentStatus.COMPLETED
            else:
                registration.payment_status = PaymentStatus.PENDING

            db.add(registration)
            await db.flush()
            return registration

        try:
            registration = await run_with_retry(db, _claim_and_insert, "create_registration")
        except IntegrityError as e:
            record_registration("rejected")
            raise DuplicateRegistrationError("Student is already registered for this event.") from e
        except EventFullError:
            record_registration("rejected")
            if verification is not None:
                await _refund_unused_payment(provider, verification, event_id, student_id)
            raise

    outcome = "confirmed" if registration.registration_status == RegistrationStatus.CONFIRMED else "waitlisted"
    record_registration(outcome)
    logger.info(
        f"registration_{outcome}",
        registration_id=registration.id,
        event_id=event_id,
        student_id=student_id,
        registration_type=registration.registration_type.value,
        payment_status=registration.payment_status.value,
        bulk_log_id=bulk_log_id,
    )
    if bulk_log_id is None:
        queue_event(
            db,
            f"registration_{outcome}",
            event_id=event_id,
            registration_id=registration.id,
            student_id=student_id,
        )
    return registration


async def _refund_unused_payment(
    provider: PaymentProvider,
    verification: PaymentVerification,
    event_id: int,
    student_id: int,
) -> None:
    """The event filled up after the student paid and there is no waitlist."""
    try:
        await provider.refund(
            verification.payment_ref,
            verification.amount,
            idempotency_key=f"unplaced-{verification.order_ref}",
            notes={"event_id": event_id, "student_id": student_id, "reason": "event_full"},
        )
        record_refund("processed")
    except PaymentProviderError as e:
        record_refund("pending")
        logger.error(
            "unplaced_payment_refund_failed",
            event_id=event_id,
            student_id=student_id,
            payment_ref=verification.payment_ref,
            error=e.message,
        )


async def complete_payment(
    db: AsyncSession,
    registration_id: int,
    payment_ref: str,
    actor: Actor,
    *,
    provider: PaymentProvider,
    now: Optional[datetime] = None,
) -> EventRegistration:
    """
    Settle the payment of a registration promoted from a paid waitlist.

    A failed payment cancels the registration and hands the slot to the
    next student in line.
    """
    now = now or utcnow()
    registration = await get_registration(db, registration_id, lock=True)
    event = await get_event_for_registration(db, registration.event_id)
    actor.authorize_registration(registration, event)

    if registration.payment_status == PaymentStatus.COMPLETED and registration.payment_order_ref == payment_ref:
        return registration
    if registration.registration_status != RegistrationStatus.CONFIRMED or registration.payment_status != PaymentStatus.PENDING:
        raise InvalidStateError(
            "Registration is not awaiting payment.",
            registration_status=registration.registration_status.value,
            payment_status=registration.payment_status.value,
        )

    verification = await provider.verify(payment_ref)
    if verification.completed:
        registration.payment_status = PaymentStatus.COMPLETED
        registration.payment_order_ref = payment_ref
        registration.payment_ref = verification.payment_ref
        registration.amount_paid = verification.amount if verification.amount is not None else event.price
        await db.flush()
        logger.info("payment_completed", registration_id=registration.id, payment_ref=verification.payment_ref)
        return registration

    if verification.status != ProviderPaymentStatus.FAILED:
        raise PaymentNotCompletedError(
            "Payment has not been completed.",
            payment_ref=payment_ref,
            payment_status=verification.status,
        )

    async def _cancel_unpaid() -> None:
        registration.registration_status = RegistrationStatus.CANCELLED
        registration.payment_status = PaymentStatus.FAILED
        registration.refund_status = RefundStatus.NOT_APPLICABLE
        registration.cancelled_at = now
        registration.cancelled_by_role = "SYSTEM"
        registration.cancellation_reason = "Payment failed"
        await release_slots(db, registration.event_id)
        await db.flush()

    await run_with_retry(db, _cancel_unpaid, "cancel_unpaid_registration")
    await run_with_retry(
        db,
        lambda: promote_from_waitlist(db, registration.event_id, 1, now=now),
        "promote_from_waitlist",
    )
    record_cancellation("payment_failed")
    logger.warning("payment_failed_registration_cancelled", registration_id=registration.id, payment_ref=payment_ref)
    queue_event(
        db,
        "registration_cancelled",
        event_id=registration.event_id,
        registration_id=registration.id,
        student_id=registration.student_id,
        reason="payment_failed",
    )
    return registration


def _no_refund(reason: str) -> RefundQuote:
    return RefundQuote(eligible=False, percent=0, amount=ZERO, reason=reason)


def quote_refund(event: Event, registration: EventRegistration, now: datetime) -> RefundQuote:
    """
    Refund owed under the event's policy for what this registration actually paid.

    A paid-up registration still on the waitlist never held a seat, so it
    gets everything back regardless of tiers.
    """
    if (
        registration.registration_status == RegistrationStatus.WAITLISTED
        and registration.payment_status == PaymentStatus.COMPLETED
        and Decimal(registration.amount_paid or 0) > 0
    ):
        return RefundQuote(
            eligible=True,
            percent=100,
            amount=Decimal(registration.amount_paid).quantize(ZERO),
            reason="Waitlisted registration never held a seat.",
        )
    if registration.payment_status != PaymentStatus.COMPLETED:
        if event.is_paid:
            return _no_refund("No completed payment to refund.")
        return calculate_refund(RefundPolicy.from_event(event), as_of=now)
    return calculate_refund(RefundPolicy.from_event(event, price=registration.amount_paid), as_of=now)


async def _mark_cancelled(
    db: AsyncSession,
    registration: EventRegistration,
    actor: Actor,
    reason: Optional[str],
    now: datetime,
) -> bool:
    """Apply the CANCELLED transition. Returns True when a confirmed slot was freed."""
    if registration.registration_status == RegistrationStatus.CANCELLED:
        raise AlreadyCancelledError(
            "Registration is already cancelled.",
            registration_id=registration.id,
        )
    freed = registration.registration_status == RegistrationStatus.CONFIRMED

    async def _transition() -> None:
        registration.registration_status = RegistrationStatus.CANCELLED
        registration.cancelled_at = now
        registration.cancelled_by_role = actor.role.value if actor.role is not None else None
        registration.cancellation_reason = reason
        if freed:
            await release_slots(db, registration.event_id)
        await db.flush()

    await run_with_retry(db, _transition, "cancel_registration")
    return freed


async def _apply_refund(
    registration: EventRegistration,
    amount: Decimal,
    provider: PaymentProvider,
    notes: dict,
) -> None:
    """Pay the refund out; a gateway failure leaves it PENDING for an operator."""
    if amount <= 0 or registration.payment_status != PaymentStatus.COMPLETED or not registration.payment_ref:
        registration.refund_status = RefundStatus.NOT_APPLICABLE
        registration.refund_amount = ZERO
        record_refund("not_applicable")
        return

    registration.refund_amount = amount
    try:
        receipt = await provider.refund(
            registration.payment_ref,
            amount,
            idempotency_key=f"refund-{registration.id}",
            notes=notes,
        )
    except PaymentProviderError as e:
        registration.refund_status = RefundStatus.PENDING
        record_refund("pending")
        logger.error("refund_failed", registration_id=registration.id, amount=str(amount), error=e.message)
        return

    registration.refund_status = RefundStatus.PROCESSED
    registration.refund_ref = receipt.refund_ref
    registration.payment_status = PaymentStatus.REFUNDED
    record_refund("processed")


async def cancel_registration(
    db: AsyncSession,
    registration_id: int,
    actor: Actor,
    reason: Optional[str] = None,
    *,
    provider: PaymentProvider,
    now: Optional[datetime] = None,
) -> CancellationResult:
    """Self-service (or organizer) cancellation with policy-based refund."""
    now = now or utcnow()
    registration = await get_registration(db, registration_id, lock=True)
    event = await get_event_for_registration(db, registration.event_id)
    actor.authorize_registration(registration, event)

    quote = quote_refund(event, registration, now)
    freed = await _mark_cancelled(db, registration, actor, reason, now)
    await _apply_refund(
        registration,
        quote.amount if quote.eligible else ZERO,
        provider,
        {"event_id": event.id, "reason": reason or "cancellation"},
    )
    await db.flush()

    promoted = []
    if freed:
        promoted = await run_with_retry(
            db,
            lambda: promote_from_waitlist(db, event.id, 1, now=now),
            "promote_from_waitlist",
        )

    record_cancellation("self_service")
    logger.info(
        "registration_cancelled",
        registration_id=registration.id,
        event_id=event.id,
        actor_role=actor.role.value if actor.role is not None else None,
        refund_amount=str(registration.refund_amount),
        refund_status=registration.refund_status.value,
        promoted_count=len(promoted),
    )
    queue_event(
        db,
        "registration_cancelled",
        event_id=event.id,
        registration_id=registration.id,
        student_id=registration.student_id,
        refund_amount=registration.refund_amount,
    )
    return CancellationResult(registration=registration, refund=quote, promoted=promoted)


async def force_cancel_registration(
    db: AsyncSession,
    registration_id: int,
    admin: Actor,
    override_amount: Optional[Decimal] = None,
    reason: Optional[str] = None,
    *,
    provider: PaymentProvider,
    now: Optional[datetime] = None,
) -> CancellationResult:
    """
    Admin escape hatch: cancel regardless of the refund policy.

    `override_amount` replaces the tier math; when omitted the full amount
    paid is refunded. Recorded on the audit log.
    """
    admin.require_admin()
    now = now or utcnow()
    registration = await get_registration(db, registration_id, lock=True)
    event = await get_event_for_registration(db, registration.event_id)

    paid = Decimal(registration.amount_paid or 0)
    if override_amount is None:
        amount = paid
    else:
        amount = Decimal(override_amount)
        if amount < 0 or amount > paid:
            raise ValidationError(
                f"Override refund amount must be between 0 and the amount paid ({paid}).",
                override_amount=str(amount),
                amount_paid=str(paid),
            )

    reason = reason or "Admin cancellation"
    freed = await _mark_cancelled(db, registration, admin, reason, now)
    await _apply_refund(
        registration,
        amount,
        provider,
        {"event_id": event.id, "reason": reason, "admin_id": admin.actor_id, "admin_override": True},
    )
    await db.flush()

    promoted = []
    if freed:
        promoted = await run_with_retry(
            db,
            lambda: promote_from_waitlist(db, event.id, 1, now=now),
            "promote_from_waitlist",
        )

    record_cancellation("admin_force")
    audit_logger.warning(
        "registration_force_cancelled",
        registration_id=registration.id,
        event_id=event.id,
        student_id=registration.student_id,
        admin_id=admin.actor_id,
        reason=reason,
        override_amount=str(override_amount) if override_amount is not None else None,
        refund_amount=str(registration.refund_amount),
        refund_status=registration.refund_status.value,
        promoted_count=len(promoted),
    )
    queue_event(
        db,
        "registration_cancelled",
        event_id=event.id,
        registration_id=registration.id,
        student_id=registration.student_id,
        refund_amount=registration.refund_amount,
        admin_override=True,
    )
    quote = RefundQuote(
        eligible=amount > 0,
        percent=int((amount / paid * 100).to_integral_value()) if paid > 0 else 0,
        amount=amount,
        reason=f"Admin override: {reason}",
    )
    return CancellationResult(registration=registration, refund=quote, promoted=promoted)


async def cancel_registrations(
    db: AsyncSession,
    registration_ids: list[int],
    actor: Actor,
    reason: Optional[str] = None,
    *,
    provider: PaymentProvider,
    now: Optional[datetime] = None,
) -> BatchCancellationResult:
    """
    Cancel several registrations in one unit of work, then backfill each
    event with as many waitlisted students as slots were freed.
    """
    if not registration_ids:
        raise ValidationError("No registrations to cancel.")
    if len(set(registration_ids)) != len(registration_ids):
        raise ValidationError("Registration ids must be unique.")

    now = now or utcnow()
    freed_per_event: dict[int, int] = defaultdict(int)
    cancelled = []

    for registration_id in registration_ids:
        registration = await get_registration(db, registration_id, lock=True)
        event = await get_event_for_registration(db, registration.event_id)
        actor.authorize_registration(registration, event)

        quote = quote_refund(event, registration, now)
        if await _mark_cancelled(db, registration, actor, reason, now):
            freed_per_event[event.id] += 1
        await _apply_refund(
            registration,
            quote.amount if quote.eligible else ZERO,
            provider,
            {"event_id": event.id, "reason": reason or "batch_cancellation"},
        )
        cancelled.append(CancellationResult(registration=registration, refund=quote))
        record_cancellation("batch")
    await db.flush()

    promoted = []
    for event_id, freed in freed_per_event.items():
        promoted.extend(
            await run_with_retry(
                db,
                lambda event_id=event_id, freed=freed: promote_from_waitlist(db, event_id, freed, now=now),
                "promote_from_waitlist",
            )
        )

    logger.info(
        "registrations_batch_cancelled",
        count=len(cancelled),
        events=sorted(freed_per_event),
        promoted_count=len(promoted),
    )
    for result in cancelled:
        queue_event(
            db,
            "registration_cancelled",
            event_id=result.registration.event_id,
            registration_id=result.registration.id,
            student_id=result.registration.student_id,
        )
    return BatchCancellationResult(cancelled=cancelled, promoted=promoted)
