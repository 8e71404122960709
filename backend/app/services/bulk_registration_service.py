"""
Bulk registration: register a list of students to one event.

FLOW
====

  1. authorize   actor.authorize_bulk_upload (size cap, ownership, event
                 status, capacity override)
  2. rate limit  actor.check_rate_limit against BulkRegistrationLog history
  3. escalate    event managers above the approval threshold get a PENDING
                 BulkRegistrationRequest and no registrations
  4. process     every row goes through registration_service.create_registration
                 in its own savepoint; a failing row is reported, never raised

Exactly one BulkRegistrationLog row is written per upload, whatever the mix
of outcomes. Approved requests reuse step 4 through `process_candidates`.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.exceptions import (
    DuplicateRegistrationError,
    InvalidStateError,
    RateLimitedError,
    RegistrationError,
    ValidationError,
)
from app.core.logging import get_logger
from app.core.metrics import record_bulk_rows, record_bulk_upload
from app.models.bulk import BulkLogStatus, BulkRegistrationLog, BulkRegistrationRequest, BulkRequestStatus
from app.models.event import BULK_REGISTRABLE, Event
from app.models.registration import RegistrationStatus
from app.models.student import Student
from app.services.actors import Actor, BulkLimits
from app.services.event_service import get_event
from app.services.interfaces.payment import PaymentProvider
from app.services.notification_service import queue_event
from app.services.registration_service import create_registration

logger = get_logger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter limit
LOOKUP_CHUNK_SIZE = 500


@dataclass
class BulkReport:
    log_id: int
    event_id: int
    total: int
    successful: int = 0
    failed: int = 0
    duplicate: int = 0
    waitlisted: int = 0
    errors: list[dict] = field(default_factory=list)
    status: BulkLogStatus = BulkLogStatus.COMPLETED
    attention_required: bool = False
    capacity_overridden: bool = False

    def as_dict(self) -> dict:
        return {
            "status": self.status,
            "log_id": self.log_id,
            "event_id": self.event_id,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "duplicate": self.duplicate,
            "waitlisted": self.waitlisted,
            "attention_required": self.attention_required,
            "capacity_overridden": self.capacity_overridden,
            "errors": self.errors,
        }


@dataclass
class PendingApproval:
    request_id: int
    log_id: int
    event_id: int
    total_count: int
    expires_at: datetime

    def as_dict(self) -> dict:
        return {
            "status": "PENDING_APPROVAL",
            "request_id": self.request_id,
            "log_id": self.log_id,
            "event_id": self.event_id,
            "total_count": self.total_count,
            "expires_at": self.expires_at,
        }


def normalize_candidates(candidates) -> list[str]:
    if not candidates:
        raise ValidationError("No students to register.")
    return ["" if c is None else str(c).strip() for c in candidates]


def final_status(successful: int, failed: int) -> BulkLogStatus:
    if failed == 0:
        return BulkLogStatus.COMPLETED
    if successful > 0:
        return BulkLogStatus.PARTIAL
    return BulkLogStatus.FAILED


async def resolve_students(db: AsyncSession, identifiers: list[str]) -> dict[str, Student]:
    wanted = sorted({i for i in identifiers if i})
    students = {}
    for start in range(0, len(wanted), LOOKUP_CHUNK_SIZE):
        chunk = wanted[start:start + LOOKUP_CHUNK_SIZE]
        result = await db.execute(select(Student).where(Student.registration_no.in_(chunk)))
        for student in result.scalars():
            students[student.registration_no] = student
    return students


async def cumulative_successful(
    db: AsyncSession,
    event_id: int,
    actor: Actor,
    since: datetime,
    exclude_log_id: Optional[int] = None,
) -> int:
    query = select(func.coalesce(func.sum(BulkRegistrationLog.successful), 0)).where(
        BulkRegistrationLog.event_id == event_id,
        BulkRegistrationLog.uploaded_by_user_id == actor.actor_id,
        BulkRegistrationLog.uploaded_by_role == actor.role,
        BulkRegistrationLog.created_at > since,
    )
    if exclude_log_id is not None:
        query = query.where(BulkRegistrationLog.id != exclude_log_id)
    return int((await db.execute(query)).scalar_one())


async def process_candidates(
    db: AsyncSession,
    event: Event,
    uploader: Actor,
    candidates: list[str],
    log: BulkRegistrationLog,
    *,
    limits: BulkLimits,
    now: datetime,
    provider: Optional[PaymentProvider] = None,
    accepting=BULK_REGISTRABLE,
) -> BulkReport:
    """
    Register every candidate row and write the outcome onto `log`.

    Rows are 1-based in upload order. A registration number repeated inside
    the same upload counts as a duplicate, like one already registered.
    """
    report = BulkReport(
        log_id=log.id,
        event_id=event.id,
        total=len(candidates),
        capacity_overridden=bool(log.capacity_overridden),
    )
    students = await resolve_students(db, candidates)
    school_scope = uploader.school_scope
    seen = set()

    for row, identifier in enumerate(candidates, start=1):
        if not identifier:
            report.failed += 1
            report.errors.append({"row": row, "identifier": identifier, "error": "Missing registration number"})
            continue
        if identifier in seen:
            report.duplicate += 1
            continue
        seen.add(identifier)

        student = students.get(identifier)
        if student is None:
            report.failed += 1
            report.errors.append({"row": row, "identifier": identifier, "error": "Student not found"})
            continue
        if school_scope is not None and student.school_id != school_scope:
            report.failed += 1
            report.errors.append({
                "row": row,
                "identifier": identifier,
                "error": "Student does not belong to your school",
            })
            continue

        try:
            registration = await create_registration(
                db,
                event.id,
                student.id,
                provider=provider,
                now=now,
                accepting=accepting,
                prepaid=True,
                allow_overflow=bool(log.capacity_overridden),
                bulk_log_id=log.id,
            )
        except DuplicateRegistrationError:
            report.duplicate += 1
            continue
        except RegistrationError as e:
            report.failed += 1
            report.errors.append({"row": row, "identifier": identifier, "error": e.message})
            continue

        report.successful += 1
        if registration.registration_status == RegistrationStatus.WAITLISTED:
            report.waitlisted += 1

    window_total = await cumulative_successful(
        db, event.id, uploader, now - timedelta(hours=24), exclude_log_id=log.id
    )
    report.attention_required = window_total + report.successful > limits.attention_threshold
    report.status = final_status(report.successful, report.failed)

    log.total_attempted = report.total
    log.successful = report.successful
    log.failed = report.failed
    log.duplicate = report.duplicate
    log.waitlisted = report.waitlisted
    log.error_details = report.errors
    log.status = report.status
    log.attention_required = report.attention_required
    await db.flush()

    record_bulk_rows(report.successful, report.failed, report.duplicate)
    record_bulk_upload(report.status.value.lower())
    logger.info(
        "bulk_upload_completed",
        log_id=log.id,
        event_id=event.id,
        total=report.total,
        successful=report.successful,
        failed=report.failed,
        duplicate=report.duplicate,
        waitlisted=report.waitlisted,
        attention_required=report.attention_required,
    )
    if report.attention_required:
        logger.warning(
            "bulk_upload_attention_required",
            log_id=log.id,
            event_id=event.id,
            uploader_id=uploader.actor_id,
            window_total=window_total + report.successful,
        )
    return report


async def bulk_register(
    db: AsyncSession,
    event_id: int,
    actor: Actor,
    candidates,
    *,
    capacity_override: bool = False,
    file_name: Optional[str] = None,
    now: Optional[datetime] = None,
    limits: Optional[BulkLimits] = None,
    provider: Optional[PaymentProvider] = None,
) -> Union[BulkReport, PendingApproval]:
    """Register a batch of students, or park it for admin approval when it is too large."""
    now = now or utcnow()
    limits = limits or BulkLimits.from_settings()
    candidates = normalize_candidates(candidates)

    event = await get_event(db, event_id)
    actor.authorize_bulk_upload(event, len(candidates), limits, capacity_override)
    try:
        await actor.check_rate_limit(db, now, limits)
    except RateLimitedError:
        record_bulk_upload("rate_limited")
        logger.warning("bulk_upload_rate_limited", event_id=event_id, uploader_id=actor.actor_id)
        raise

    log = BulkRegistrationLog(
        event_id=event_id,
        uploaded_by_user_id=actor.actor_id,
        uploaded_by_role=actor.role,
        total_attempted=len(candidates),
        successful=0,
        failed=0,
        duplicate=0,
        waitlisted=0,
        file_name=file_name,
        capacity_overridden=capacity_override,
        attention_required=False,
        created_at=now,
        updated_at=now,
    )

    if actor.requires_approval(len(candidates), limits):
        log.status = BulkLogStatus.PENDING_APPROVAL
        db.add(log)
        await db.flush()

        request = BulkRegistrationRequest(
            event_id=event_id,
            bulk_log_id=log.id,
            requested_by_user_id=actor.actor_id,
            requested_by_role=actor.role,
            requester_school_id=actor.school_scope,
            total_count=len(candidates),
            candidates=candidates,
            status=BulkRequestStatus.PENDING,
            expires_at=now + timedelta(days=limits.request_ttl_days),
            created_at=now,
            updated_at=now,
        )
        db.add(request)
        await db.flush()

        record_bulk_upload("pending_approval")
        logger.info(
            "bulk_request_created",
            request_id=request.id,
            log_id=log.id,
            event_id=event_id,
            total_count=len(candidates),
            expires_at=request.expires_at.isoformat(),
        )
        queue_event(
            db,
            "bulk_request_pending",
            request_id=request.id,
            event_id=event_id,
            total_count=len(candidates),
        )
        return PendingApproval(
            request_id=request.id,
            log_id=log.id,
            event_id=event_id,
            total_count=len(candidates),
            expires_at=request.expires_at,
        )

    log.status = BulkLogStatus.COMPLETED
    db.add(log)
    await db.flush()

    if capacity_override:
        logger.warning("bulk_capacity_override", event_id=event_id, admin_id=actor.actor_id, log_id=log.id)

    return await process_candidates(
        db, event, actor, candidates, log, limits=limits, now=now, provider=provider
    )


async def get_upload_eligibility(
    db: AsyncSession,
    event_id: int,
    actor: Actor,
    now: Optional[datetime] = None,
    limits: Optional[BulkLimits] = None,
) -> dict:
    """Report whether the actor could upload to this event right now, and why not."""
    now = now or utcnow()
    limits = limits or BulkLimits.from_settings()

    event = await get_event(db, event_id)
    actor.authorize_event(event)

    status_reason = "Event is in an editable state"
    try:
        actor.authorize_bulk_upload(event, 0, limits, False)
        status_ok = True
    except InvalidStateError as e:
        status_ok = False
        status_reason = e.message

    rate = await actor.rate_limit_status(db, now, limits)

    return {
        "can_upload": rate.allowed and status_ok,
        "constraints": {
            "rate_limit": {
                "allowed": rate.allowed,
                "reason": rate.reason,
                "retry_after_seconds": rate.retry_after_seconds,
                "daily_uploads": rate.daily_uploads,
                "daily_uploads_max": limits.max_uploads_per_day,
                "daily_students": rate.daily_students,
                "daily_students_max": limits.max_students_per_day,
            },
            "event_status": {
                "current": event.status.value,
                "can_bulk_register": status_ok,
                "reason": status_reason,
            },
            "capacity": {
                "confirmed": event.confirmed_count,
                "max": event.capacity,
                "available": event.available_slots,
                "waitlist_enabled": event.waitlist_enabled,
                "requires_approval_over": None if actor.is_admin else limits.approval_threshold,
                "max_upload_size": None if actor.is_admin else limits.max_upload_size,
            },
        },
    }


async def list_bulk_logs(
    db: AsyncSession,
    actor: Actor,
    event_id: Optional[int] = None,
    limit: int = 50,
) -> list[BulkRegistrationLog]:
    """Admins see every upload; everyone else sees only their own."""
    query = select(BulkRegistrationLog)
    if not actor.is_admin:
        query = query.where(
            BulkRegistrationLog.uploaded_by_user_id == actor.actor_id,
            BulkRegistrationLog.uploaded_by_role == actor.role,
        )
    if event_id is not None:
        query = query.where(BulkRegistrationLog.event_id == event_id)

    result = await db.execute(
        query.order_by(BulkRegistrationLog.created_at.desc(), BulkRegistrationLog.id.desc()).limit(limit)
    )
    return list(result.scalars().all())
