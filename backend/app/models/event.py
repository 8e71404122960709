"""
Event model with capacity tracking and refund policy.

Key design decisions:
- `confirmed_count` is denormalized (avoids COUNT on registrations in the hot
  path) and is only ever changed through services.capacity.claim_slots /
  release_slots, as a single conditional UPDATE
- `capacity` NULL means unlimited
- `version` is bumped on every counter change so readers can detect staleness
- `refund_tiers` is a JSON list of {days_before, percent}, stored sorted by
  days_before descending
"""

import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from app.db.base import Base, TimestampMixin, enum_column


class EventType(str, enum.Enum):
    FREE = "FREE"
    PAID = "PAID"


class EventStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


# Students can self-register only once an event is published
OPEN_FOR_REGISTRATION = frozenset({EventStatus.APPROVED, EventStatus.ACTIVE})
# Admin bulk uploads may also seed events that are still being prepared
BULK_REGISTRABLE = frozenset({
    EventStatus.DRAFT,
    EventStatus.REJECTED,
    EventStatus.APPROVED,
    EventStatus.ACTIVE,
})
# Event managers may only modify events that are not yet published
MANAGER_EDITABLE = frozenset({EventStatus.DRAFT, EventStatus.REJECTED})


class Event(Base, TimestampMixin):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    event_type = enum_column(EventType, nullable=False, default=EventType.FREE)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")
    start_date = Column(DateTime(timezone=True), nullable=False)
    status = enum_column(EventStatus, nullable=False, default=EventStatus.DRAFT)
    organizer_id = Column(Integer, nullable=True, index=True)  # owning event manager

    capacity = Column(Integer, nullable=True)
    confirmed_count = Column(Integer, nullable=False, default=0)
    waitlist_enabled = Column(Boolean, nullable=False, default=False)

    refund_enabled = Column(Boolean, nullable=False, default=False)
    cancellation_deadline_hours = Column(Integer, nullable=False, default=24)
    refund_tiers = Column(JSON, nullable=True)

    # Optimistic concurrency marker
    version = Column(Integer, nullable=False, default=1)

    registrations = relationship(
        "EventRegistration",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint("confirmed_count >= 0", name="check_confirmed_count_non_negative"),
        CheckConstraint("capacity IS NULL OR capacity >= 0", name="check_capacity_non_negative"),
        CheckConstraint("price >= 0", name="check_price_non_negative"),
        CheckConstraint("cancellation_deadline_hours >= 0", name="check_deadline_non_negative"),
        Index("ix_events_start_date", "start_date"),
        Index("ix_events_organizer_status", "organizer_id", "status"),
    )

    @property
    def is_paid(self) -> bool:
        return self.event_type == EventType.PAID

    @property
    def is_full(self) -> bool:
        return self.capacity is not None and self.confirmed_count >= self.capacity

    @property
    def available_slots(self):
        if self.capacity is None:
            return None
        return max(self.capacity - self.confirmed_count, 0)

    def __repr__(self) -> str:
        return f"<Event(id={self.id}, title={self.title}, confirmed={self.confirmed_count}/{self.capacity})>"
