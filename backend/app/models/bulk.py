"""
Bulk registration audit log and approval requests.

BulkRegistrationLog is append-only: one row per upload attempt. After the
upload completes only `status` and `attention_required` may change.

BulkRegistrationRequest holds an oversized upload until an admin decides.
PENDING is the only state with outgoing transitions; PROCESSING is the short
window while an approval is being applied.
"""

import enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import relationship

from app.db.base import Base, TimestampMixin, enum_column


class ActorRole(str, enum.Enum):
    ADMIN = "ADMIN"
    EVENT_MANAGER = "EVENT_MANAGER"
    STUDENT = "STUDENT"


class BulkLogStatus(str, enum.Enum):
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    PENDING_APPROVAL = "PENDING_APPROVAL"


class BulkRequestStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


TERMINAL_REQUEST_STATUSES = frozenset({
    BulkRequestStatus.APPROVED,
    BulkRequestStatus.REJECTED,
    BulkRequestStatus.EXPIRED,
})


class BulkRegistrationLog(Base, TimestampMixin):
    __tablename__ = "bulk_registration_logs"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    uploaded_by_user_id = Column(Integer, nullable=False, index=True)
    uploaded_by_role = enum_column(ActorRole, nullable=False)

    total_attempted = Column(Integer, nullable=False)
    successful = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    duplicate = Column(Integer, nullable=False, default=0)
    waitlisted = Column(Integer, nullable=False, default=0)

    file_name = Column(String(255), nullable=True)
    status = enum_column(BulkLogStatus, nullable=False, default=BulkLogStatus.COMPLETED)
    capacity_overridden = Column(Boolean, nullable=False, default=False)
    attention_required = Column(Boolean, nullable=False, default=False)
    error_details = Column(JSON, nullable=True)  # [{row, identifier, error}]

    __table_args__ = (
        Index("ix_bulk_logs_uploader_created", "uploaded_by_user_id", "uploaded_by_role", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<BulkRegistrationLog(id={self.id}, event={self.event_id}, status={self.status})>"


class BulkRegistrationRequest(Base, TimestampMixin):
    __tablename__ = "bulk_registration_requests"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    bulk_log_id = Column(Integer, ForeignKey("bulk_registration_logs.id"), nullable=True)

    requested_by_user_id = Column(Integer, nullable=False, index=True)
    requested_by_role = enum_column(ActorRole, nullable=False)
    requester_school_id = Column(Integer, nullable=True)

    total_count = Column(Integer, nullable=False)
    candidates = Column(JSON, nullable=False)  # registration numbers, upload order

    status = enum_column(BulkRequestStatus, nullable=False, default=BulkRequestStatus.PENDING)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    approved_by_admin_id = Column(Integer, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_by_admin_id = Column(Integer, nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason_code = Column(String(50), nullable=True)
    rejection_reason_text = Column(Text, nullable=True)
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    processing_completed_at = Column(DateTime(timezone=True), nullable=True)

    bulk_log = relationship("BulkRegistrationLog")

    __table_args__ = (
        Index("ix_bulk_requests_status_expires", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<BulkRegistrationRequest(id={self.id}, event={self.event_id}, status={self.status})>"
