"""
Refund eligibility and amount for a cancelled registration.

Pure functions only: no I/O, no clock reads unless `as_of` is omitted.

Decision order (first match wins):
  1. FREE event                       -> not eligible
  2. refunds disabled                 -> not eligible
  3. event already started            -> not eligible
  4. inside the cancellation deadline -> not eligible
  5. tier lookup                      -> eligible, possibly with percent 0

Gate failures (1-4) always report eligible=False. A tier lookup always
reports eligible=True, so "the policy refunds nothing this close to the
event" stays distinguishable from "refunds are not possible at all".
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from app.core.clock import ensure_utc, utcnow
from app.models.event import Event, EventType

CENT = Decimal("0.01")


@dataclass(frozen=True)
class RefundTier:
    days_before: int
    percent: int


@dataclass(frozen=True)
class RefundPolicy:
    """Snapshot of the refund-relevant fields of an event."""

    event_type: EventType
    price: Decimal
    refund_enabled: bool
    start_date: datetime
    cancellation_deadline_hours: int = 0
    refund_tiers: tuple = field(default_factory=tuple)

    @classmethod
    def from_event(cls, event: Event, price: Optional[Decimal] = None) -> "RefundPolicy":
        return cls(
            event_type=EventType(event.event_type),
            price=Decimal(str(price if price is not None else event.price or 0)),
            refund_enabled=bool(event.refund_enabled),
            start_date=ensure_utc(event.start_date),
            cancellation_deadline_hours=event.cancellation_deadline_hours or 0,
            refund_tiers=tuple(parse_refund_tiers(event.refund_tiers)),
        )


@dataclass(frozen=True)
class RefundQuote:
    eligible: bool
    percent: int
    amount: Decimal
    reason: str

    def as_dict(self) -> dict:
        return {
            "eligible": self.eligible,
            "percent": self.percent,
            "amount": self.amount,
            "reason": self.reason,
        }


def _ineligible(reason: str) -> RefundQuote:
    return RefundQuote(eligible=False, percent=0, amount=Decimal("0.00"), reason=reason)


def validate_refund_tiers(tiers) -> Optional[str]:
    """Return an error message for a malformed tier list, or None when valid."""
    if not isinstance(tiers, (list, tuple)):
        return "Refund tiers must be a list"

    seen = set()
    for tier in tiers:
        if isinstance(tier, RefundTier):
            days_before, percent = tier.days_before, tier.percent
        elif isinstance(tier, dict):
            days_before, percent = tier.get("days_before"), tier.get("percent")
        else:
            return "Each refund tier must be an object with days_before and percent"

        if isinstance(days_before, bool) or not isinstance(days_before, int) or days_before < 0:
            return "days_before must be a non-negative integer"
        if isinstance(percent, bool) or not isinstance(percent, int) or not 0 <= percent <= 100:
            return "percent must be an integer between 0 and 100"
        if days_before in seen:
            return f"Duplicate refund tier for days_before={days_before}"
        seen.add(days_before)

    return None


def parse_refund_tiers(tiers) -> list[RefundTier]:
    """Normalize stored tiers and sort them by days_before descending."""
    if not tiers:
        return []
    parsed = [
        t if isinstance(t, RefundTier) else RefundTier(int(t["days_before"]), int(t["percent"]))
        for t in tiers
    ]
    return sorted(parsed, key=lambda t: t.days_before, reverse=True)


def calculate_refund(policy: RefundPolicy, as_of: Optional[datetime] = None) -> RefundQuote:
    as_of = ensure_utc(as_of) if as_of is not None else utcnow()

    if policy.event_type == EventType.FREE:
        return _ineligible("Free events are not eligible for refunds.")

    if not policy.refund_enabled:
        return _ineligible("Refunds are not enabled for this event.")

    start = ensure_utc(policy.start_date)
    if as_of >= start:
        return _ineligible("Event has already occurred.")

    hours_until_start = (start - as_of).total_seconds() / 3600
    deadline = policy.cancellation_deadline_hours or 0
    if hours_until_start < deadline:
        return _ineligible(
            f"Cancellation deadline passed (refunds require cancelling at least "
            f"{deadline} hours before the event)."
        )

    days_before = math.floor(hours_until_start / 24)
    tiers = parse_refund_tiers(policy.refund_tiers)

    if not tiers:
        percent = 100
        reason = "Full refund (no refund tiers defined)."
    else:
        matched = next((t for t in tiers if days_before >= t.days_before), None)
        if matched is None:
            percent = 0
            reason = f"No refund ({days_before} days before event is below every refund tier)."
        else:
            percent = matched.percent
            reason = f"{percent}% refund ({days_before} days before event)."

    amount = (policy.price * Decimal(percent) / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)
    return RefundQuote(eligible=True, percent=percent, amount=amount, reason=reason)
