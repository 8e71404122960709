"""
Tests for refund eligibility and tier math. No database needed.
"""

from datetime import datetime, timezone, timedelta
from decimal import Decimal

import pytest

from app.models.event import EventType
from app.services.refund_calculator import (
    RefundPolicy,
    RefundTier,
    calculate_refund,
    parse_refund_tiers,
    validate_refund_tiers,
)

START = datetime(2026, 12, 1, 10, 0, tzinfo=timezone.utc)
TIERS = (
    {"days_before": 7, "percent": 100},
    {"days_before": 3, "percent": 50},
    {"days_before": 0, "percent": 0},
)


def paid_policy(**overrides) -> RefundPolicy:
    fields = dict(
        event_type=EventType.PAID,
        price=Decimal("1000.00"),
        refund_enabled=True,
        start_date=START,
        cancellation_deadline_hours=0,
        refund_tiers=TIERS,
    )
    fields.update(overrides)
    return RefundPolicy(**fields)


@pytest.mark.parametrize(
    "days, percent, amount",
    [
        (10, 100, Decimal("1000.00")),
        (5, 50, Decimal("500.00")),
        (1, 0, Decimal("0.00")),
    ],
)
def test_tier_lookup(days, percent, amount):
    quote = calculate_refund(paid_policy(), as_of=START - timedelta(days=days))
    assert quote.eligible is True
    assert quote.percent == percent
    assert quote.amount == amount


def test_tier_boundary_is_inclusive():
    """Exactly 7 days out still gets the 7-day tier."""
    quote = calculate_refund(paid_policy(), as_of=START - timedelta(days=7))
    assert quote.percent == 100


def test_partial_days_are_floored():
    """6 days 23 hours is 6 whole days: the 3-day tier applies."""
    quote = calculate_refund(paid_policy(), as_of=START - timedelta(days=6, hours=23))
    assert quote.percent == 50


def test_free_event_not_eligible():
    quote = calculate_refund(
        paid_policy(event_type=EventType.FREE, price=Decimal("0")),
        as_of=START - timedelta(days=10),
    )
    assert quote.eligible is False
    assert quote.amount == Decimal("0.00")


def test_refunds_disabled():
    quote = calculate_refund(paid_policy(refund_enabled=False), as_of=START - timedelta(days=10))
    assert quote.eligible is False
    assert "not enabled" in quote.reason


def test_event_already_started():
    quote = calculate_refund(paid_policy(), as_of=START + timedelta(minutes=1))
    assert quote.eligible is False
    assert "already occurred" in quote.reason


def test_inside_cancellation_deadline():
    """Deadline gate wins over a tier that would otherwise pay out."""
    policy = paid_policy(cancellation_deadline_hours=48)
    quote = calculate_refund(policy, as_of=START - timedelta(hours=47))
    assert quote.eligible is False
    assert quote.percent == 0
    assert "deadline" in quote.reason

    quote = calculate_refund(policy, as_of=START - timedelta(days=10))
    assert quote.eligible is True
    assert quote.percent == 100


@pytest.mark.parametrize(
    "before, eligible, percent, amount",
    [
        (timedelta(days=10), True, 100, Decimal("1000.00")),
        (timedelta(days=5), True, 50, Decimal("500.00")),
        (timedelta(days=1, hours=1), True, 0, Decimal("0.00")),
        (timedelta(hours=23), False, 0, Decimal("0")),
    ],
)
def test_two_tiers_with_one_day_deadline(before, eligible, percent, amount):
    policy = paid_policy(
        cancellation_deadline_hours=24,
        refund_tiers=({"days_before": 7, "percent": 100}, {"days_before": 3, "percent": 50}),
    )
    quote = calculate_refund(policy, as_of=START - before)
    assert quote.eligible is eligible
    assert quote.percent == percent
    assert quote.amount == amount


def test_no_tiers_means_full_refund():
    quote = calculate_refund(paid_policy(refund_tiers=()), as_of=START - timedelta(days=1))
    assert quote.eligible is True
    assert quote.percent == 100
    assert quote.amount == Decimal("1000.00")


def test_below_every_tier_refunds_nothing_but_is_eligible():
    policy = paid_policy(refund_tiers=({"days_before": 14, "percent": 80},))
    quote = calculate_refund(policy, as_of=START - timedelta(days=5))
    assert quote.eligible is True
    assert quote.percent == 0
    assert quote.amount == Decimal("0.00")


def test_amount_is_rounded_to_cents():
    policy = paid_policy(price=Decimal("99.99"), refund_tiers=({"days_before": 0, "percent": 33},))
    quote = calculate_refund(policy, as_of=START - timedelta(days=2))
    assert quote.amount == Decimal("33.00")


def test_unsorted_tiers_are_matched_highest_first():
    shuffled = (TIERS[2], TIERS[0], TIERS[1])
    quote = calculate_refund(paid_policy(refund_tiers=shuffled), as_of=START - timedelta(days=8))
    assert quote.percent == 100


def test_calculation_is_pure():
    policy = paid_policy()
    as_of = START - timedelta(days=5)
    assert calculate_refund(policy, as_of=as_of) == calculate_refund(policy, as_of=as_of)
    assert policy.refund_tiers == TIERS


def test_naive_as_of_is_treated_as_utc():
    naive = (START - timedelta(days=10)).replace(tzinfo=None)
    assert calculate_refund(paid_policy(), as_of=naive).percent == 100


def test_parse_sorts_descending():
    parsed = parse_refund_tiers([{"days_before": 0, "percent": 0}, {"days_before": 7, "percent": 100}])
    assert parsed == [RefundTier(7, 100), RefundTier(0, 0)]


@pytest.mark.parametrize(
    "tiers, message",
    [
        ("not a list", "must be a list"),
        ([{"days_before": -1, "percent": 10}], "days_before"),
        ([{"days_before": 1, "percent": 101}], "percent"),
        ([{"days_before": 1, "percent": True}], "percent"),
        ([{"days_before": 3, "percent": 10}, {"days_before": 3, "percent": 20}], "Duplicate"),
        ([42], "object"),
    ],
)
def test_validate_rejects_malformed_tiers(tiers, message):
    assert message in validate_refund_tiers(tiers)


def test_validate_accepts_good_tiers():
    assert validate_refund_tiers(list(TIERS)) is None
    assert validate_refund_tiers([]) is None
