"""
EventRegistration model: one student's place (or waitlist spot) at an event.

Key design decisions:
- Rows are never deleted by the lifecycle; cancellation is a status change
  so the audit trail survives
- Partial unique index on (event_id, student_id) for non-cancelled rows:
  a student can hold at most one live registration per event, which also
  makes paid verify-after-initiate retries idempotent
- `registered_at` is the FIFO key for waitlist promotion (ties broken by id)
"""

import enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, text
from sqlalchemy.orm import relationship

from app.core.clock import utcnow
from app.db.base import Base, TimestampMixin, enum_column


class RegistrationType(str, enum.Enum):
    FREE = "FREE"
    PAID = "PAID"
    WAITLIST = "WAITLIST"


class RegistrationStatus(str, enum.Enum):
    PENDING = "PENDING"  # transient, never committed
    CONFIRMED = "CONFIRMED"
    WAITLISTED = "WAITLISTED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    NOT_REQUIRED = "NOT_REQUIRED"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class RefundStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"
    NOT_APPLICABLE = "NOT_APPLICABLE"


class EventRegistration(Base, TimestampMixin):
    __tablename__ = "event_registrations"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False, index=True)

    registration_type = enum_column(RegistrationType, nullable=False)
    registration_status = enum_column(RegistrationStatus, nullable=False)
    registered_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    promoted_at = Column(DateTime(timezone=True), nullable=True)

    # Payment
    payment_status = enum_column(PaymentStatus, nullable=False, default=PaymentStatus.NOT_REQUIRED)
    payment_order_ref = Column(String(100), nullable=True, index=True)
    payment_ref = Column(String(100), nullable=True)
    amount_paid = Column(Numeric(10, 2), nullable=False, default=0)

    # Cancellation / refund
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by_role = Column(String(20), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    refund_status = enum_column(RefundStatus, nullable=True)
    refund_amount = Column(Numeric(10, 2), nullable=True)
    refund_ref = Column(String(100), nullable=True)

    bulk_log_id = Column(Integer, ForeignKey("bulk_registration_logs.id"), nullable=True)

    event = relationship("Event", back_populates="registrations")
    student = relationship("Student", back_populates="registrations")

    __table_args__ = (
        Index(
            "uq_active_registration",
            "event_id",
            "student_id",
            unique=True,
            postgresql_where=text("registration_status <> 'CANCELLED'"),
            sqlite_where=text("registration_status <> 'CANCELLED'"),
        ),
        # Waitlist scan: WHERE event_id = ? AND status = 'WAITLISTED' ORDER BY registered_at
        Index("ix_registrations_waitlist", "event_id", "registration_status", "registered_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.registration_status != RegistrationStatus.CANCELLED

    def __repr__(self) -> str:
        return (
            f"<EventRegistration(id={self.id}, event={self.event_id}, "
            f"student={self.student_id}, status={self.registration_status})>"
        )
