"""Initial schema: students, events, registrations, bulk logs and approval requests.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Students table
    op.create_table(
        "students",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("registration_no", sa.String(50), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("school_id", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_students_id", "students", ["id"])
    op.create_index("ix_students_registration_no", "students", ["registration_no"], unique=True)
    op.create_index("ix_students_school_id", "students", ["school_id"])

    # Events table
    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(30), nullable=False, server_default=sa.text("'FREE'")),
        sa.Column("price", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'INR'")),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default=sa.text("'DRAFT'")),
        sa.Column("organizer_id", sa.Integer(), nullable=True),
        sa.Column("capacity", sa.Integer(), nullable=True),
        sa.Column("confirmed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("waitlist_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("refund_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancellation_deadline_hours", sa.Integer(), nullable=False, server_default=sa.text("24")),
        sa.Column("refund_tiers", sa.JSON(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.CheckConstraint("confirmed_count >= 0", name="check_confirmed_count_non_negative"),
        sa.CheckConstraint("capacity IS NULL OR capacity >= 0", name="check_capacity_non_negative"),
        sa.CheckConstraint("price >= 0", name="check_price_non_negative"),
        sa.CheckConstraint("cancellation_deadline_hours >= 0", name="check_deadline_non_negative"),
    )
    op.create_index("ix_events_id", "events", ["id"])
    op.create_index("ix_events_organizer_id", "events", ["organizer_id"])
    op.create_index("ix_events_start_date", "events", ["start_date"])
    # Event managers list their own editable events: WHERE organizer_id = ? AND status IN (...)
    op.create_index("ix_events_organizer_status", "events", ["organizer_id", "status"])

    # Bulk upload audit log (referenced by registrations, so created first)
    op.create_table(
        "bulk_registration_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Integer(), sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("uploaded_by_user_id", sa.Integer(), nullable=False),
        sa.Column("uploaded_by_role", sa.String(30), nullable=False),
        sa.Column("total_attempted", sa.Integer(), nullable=False),
        sa.Column("successful", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("duplicate", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("waitlisted", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("file_name", sa.String(255), nullable=True),
        sa.Column("status", sa.String(30), nullable=False, server_default=sa.text("'COMPLETED'")),
        sa.Column("capacity_overridden", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attention_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error_details", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_bulk_registration_logs_id", "bulk_registration_logs", ["id"])
    op.create_index("ix_bulk_registration_logs_event_id", "bulk_registration_logs", ["event_id"])
    op.create_index(
        "ix_bulk_registration_logs_uploaded_by_user_id", "bulk_registration_logs", ["uploaded_by_user_id"]
    )
    # Rate limits read an actor's uploads of the last 24h on every upload
    op.create_index(
        "ix_bulk_logs_uploader_created",
        "bulk_registration_logs",
        ["uploaded_by_user_id", "uploaded_by_role", "created_at"],
    )

    # Registrations table
    op.create_table(
        "event_registrations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Integer(), sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("students.id"), nullable=False),
        sa.Column("registration_type", sa.String(30), nullable=False),
        sa.Column("registration_status", sa.String(30), nullable=False),
        sa.Column("registered_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("promoted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_status", sa.String(30), nullable=False, server_default=sa.text("'NOT_REQUIRED'")),
        sa.Column("payment_order_ref", sa.String(100), nullable=True),
        sa.Column("payment_ref", sa.String(100), nullable=True),
        sa.Column("amount_paid", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by_role", sa.String(20), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("refund_status", sa.String(30), nullable=True),
        sa.Column("refund_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("refund_ref", sa.String(100), nullable=True),
        sa.Column("bulk_log_id", sa.Integer(), sa.ForeignKey("bulk_registration_logs.id"), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_event_registrations_id", "event_registrations", ["id"])
    op.create_index("ix_event_registrations_event_id", "event_registrations", ["event_id"])
    op.create_index("ix_event_registrations_student_id", "event_registrations", ["student_id"])
    op.create_index("ix_event_registrations_payment_order_ref", "event_registrations", ["payment_order_ref"])
    # ONE LIVE REGISTRATION PER STUDENT PER EVENT.
    # Cancelled rows are kept for audit, so a plain unique constraint would
    # block re-registration. The partial index also makes payment
    # verify-after-initiate retries unable to create a second confirmed row.
    op.create_index(
        "uq_active_registration",
        "event_registrations",
        ["event_id", "student_id"],
        unique=True,
        postgresql_where=sa.text("registration_status <> 'CANCELLED'"),
        sqlite_where=sa.text("registration_status <> 'CANCELLED'"),
    )
    # Waitlist promotion: WHERE event_id = ? AND registration_status = 'WAITLISTED' ORDER BY registered_at
    op.create_index(
        "ix_registrations_waitlist",
        "event_registrations",
        ["event_id", "registration_status", "registered_at"],
    )

    # Approval requests
    op.create_table(
        "bulk_registration_requests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Integer(), sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("bulk_log_id", sa.Integer(), sa.ForeignKey("bulk_registration_logs.id"), nullable=True),
        sa.Column("requested_by_user_id", sa.Integer(), nullable=False),
        sa.Column("requested_by_role", sa.String(30), nullable=False),
        sa.Column("requester_school_id", sa.Integer(), nullable=True),
        sa.Column("total_count", sa.Integer(), nullable=False),
        sa.Column("candidates", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approved_by_admin_id", sa.Integer(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_by_admin_id", sa.Integer(), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason_code", sa.String(50), nullable=True),
        sa.Column("rejection_reason_text", sa.Text(), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_bulk_registration_requests_id", "bulk_registration_requests", ["id"])
    op.create_index("ix_bulk_registration_requests_event_id", "bulk_registration_requests", ["event_id"])
    op.create_index(
        "ix_bulk_registration_requests_requested_by_user_id",
        "bulk_registration_requests",
        ["requested_by_user_id"],
    )
    # Lazy expiry sweep: WHERE status = 'PENDING' AND expires_at <= now()
    op.create_index(
        "ix_bulk_requests_status_expires", "bulk_registration_requests", ["status", "expires_at"]
    )


def downgrade() -> None:
    op.drop_table("bulk_registration_requests")
    op.drop_table("event_registrations")
    op.drop_table("bulk_registration_logs")
    op.drop_table("events")
    op.drop_table("students")
