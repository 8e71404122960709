"""
Admin approval of oversized bulk registration requests.

Request states:

    PENDING --approve--> PROCESSING --> APPROVED
       |
       +--reject--> REJECTED
       +--expires_at passed--> EXPIRED

PENDING is the only state with outgoing transitions. APPROVED, REJECTED and
EXPIRED are terminal.

Expiry is lazy: there is no scheduler. Every read of the pending list first
sweeps PENDING requests whose expires_at has passed to EXPIRED. Approve and
reject check expires_at themselves, so a stale request that nobody listed
still cannot be decided (RequestExpiredError).
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import ensure_utc, utcnow
from app.core.exceptions import InvalidStateError, NotFoundError, RequestExpiredError, ValidationError
from app.core.logging import get_audit_logger, get_logger
from app.core.metrics import record_approval_decision
from app.models.bulk import BulkLogStatus, BulkRegistrationLog, BulkRegistrationRequest, BulkRequestStatus
from app.models.event import BULK_REGISTRABLE, EventStatus
from app.services.actors import Actor, BulkLimits, actor_from_claims
from app.services.bulk_registration_service import BulkReport, process_candidates
from app.services.event_service import get_event
from app.services.interfaces.payment import PaymentProvider
from app.services.notification_service import queue_event

logger = get_logger(__name__)
audit_logger = get_audit_logger(__name__)

SORT_ORDERS = {
    "newest": (BulkRegistrationRequest.created_at.desc(), BulkRegistrationRequest.id.desc()),
    "oldest": (BulkRegistrationRequest.created_at.asc(), BulkRegistrationRequest.id.asc()),
    "largest": (BulkRegistrationRequest.total_count.desc(), BulkRegistrationRequest.id.asc()),
    "urgency": (BulkRegistrationRequest.expires_at.asc(), BulkRegistrationRequest.id.asc()),
}

# An approved request may land on an event that has since been submitted for review
APPROVAL_ACCEPTING = BULK_REGISTRABLE | {EventStatus.PENDING_APPROVAL}

REJECTION_REASON_CODES = frozenset({
    "CAPACITY",
    "DUPLICATE_REQUEST",
    "INVALID_STUDENTS",
    "POLICY",
    "CUSTOM",
})


async def _close_log(db: AsyncSession, log_id: Optional[int], status: BulkLogStatus) -> None:
    if log_id is None:
        return
    log = await db.get(BulkRegistrationLog, log_id)
    if log is not None:
        log.status = status


async def expire_stale_requests(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Move every overdue PENDING request to EXPIRED. Returns how many expired."""
    now = now or utcnow()
    result = await db.execute(
        select(BulkRegistrationRequest)
        .where(
            BulkRegistrationRequest.status == BulkRequestStatus.PENDING,
            BulkRegistrationRequest.expires_at <= now,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    stale = list(result.scalars().all())

    for request in stale:
        request.status = BulkRequestStatus.EXPIRED
        await _close_log(db, request.bulk_log_id, BulkLogStatus.FAILED)
        logger.info(
            "bulk_request_expired",
            request_id=request.id,
            event_id=request.event_id,
            expired_at=ensure_utc(request.expires_at).isoformat(),
        )
    if stale:
        await db.flush()
        record_approval_decision("expired", len(stale))
    return len(stale)


async def list_pending_requests(
    db: AsyncSession,
    admin: Actor,
    sort_by: str = "newest",
    now: Optional[datetime] = None,
) -> tuple[list[BulkRegistrationRequest], dict]:
    """Pending requests plus a summary. Performs the lazy expiry sweep first."""
    admin.require_admin()
    if sort_by not in SORT_ORDERS:
        raise ValidationError(
            f"Unknown sort order '{sort_by}'. Use one of: {', '.join(SORT_ORDERS)}.",
            sort_by=sort_by,
        )
    now = now or utcnow()
    await expire_stale_requests(db, now)

    result = await db.execute(
        select(BulkRegistrationRequest)
        .where(BulkRegistrationRequest.status == BulkRequestStatus.PENDING)
        .order_by(*SORT_ORDERS[sort_by])
    )
    requests = list(result.scalars().all())

    soon = now + timedelta(hours=24)
    summary = {
        "total_pending": len(requests),
        "total_students": sum(r.total_count for r in requests),
        "expiring_soon": sum(1 for r in requests if ensure_utc(r.expires_at) <= soon),
    }
    return requests, summary


async def get_request(db: AsyncSession, request_id: int, lock: bool = False) -> BulkRegistrationRequest:
    query = select(BulkRegistrationRequest).where(BulkRegistrationRequest.id == request_id)
    if lock:
        query = query.with_for_update()
    result = await db.execute(query.execution_options(populate_existing=True))
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFoundError(f"Bulk registration request {request_id} not found", request_id=request_id)
    return request


def _ensure_decidable(request: BulkRegistrationRequest, now: datetime) -> None:
    if request.status == BulkRequestStatus.EXPIRED or (
        request.status == BulkRequestStatus.PENDING and ensure_utc(request.expires_at) <= now
    ):
        raise RequestExpiredError(
            "This request has expired and can no longer be approved or rejected.",
            request_id=request.id,
            expires_at=ensure_utc(request.expires_at).isoformat(),
        )
    if request.status != BulkRequestStatus.PENDING:
        raise InvalidStateError(
            f"Request is already {request.status.value}.",
            request_id=request.id,
            request_status=request.status.value,
        )


async def approve_bulk_request(
    db: AsyncSession,
    request_id: int,
    admin: Actor,
    *,
    now: Optional[datetime] = None,
    limits: Optional[BulkLimits] = None,
    provider: Optional[PaymentProvider] = None,
) -> tuple[BulkRegistrationRequest, BulkReport]:
    """
    Approve a pending request and register its stored candidates as the
    original requester (their school scope still applies per row).
    """
    admin.require_admin()
    now = now or utcnow()
    limits = limits or BulkLimits.from_settings()

    request = await get_request(db, request_id, lock=True)
    _ensure_decidable(request, now)

    request.status = BulkRequestStatus.PROCESSING
    request.processing_started_at = now
    await db.flush()

    event = await get_event(db, request.event_id)
    requester = actor_from_claims(
        request.requested_by_role.value,
        request.requested_by_user_id,
        request.requester_school_id,
    )

    log = await db.get(BulkRegistrationLog, request.bulk_log_id) if request.bulk_log_id else None
    if log is None:
        log = BulkRegistrationLog(
            event_id=request.event_id,
            uploaded_by_user_id=request.requested_by_user_id,
            uploaded_by_role=request.requested_by_role,
            total_attempted=request.total_count,
            status=BulkLogStatus.COMPLETED,
            capacity_overridden=False,
            attention_required=False,
        )
        db.add(log)
        await db.flush()
        request.bulk_log_id = log.id

    report = await process_candidates(
        db,
        event,
        requester,
        list(request.candidates),
        log,
        limits=limits,
        now=now,
        provider=provider,
        accepting=APPROVAL_ACCEPTING,
    )

    request.status = BulkRequestStatus.APPROVED
    request.approved_by_admin_id = admin.actor_id
    request.approved_at = now
    request.processing_completed_at = now
    await db.flush()

    record_approval_decision("approved")
    audit_logger.info(
        "bulk_request_approved",
        request_id=request.id,
        event_id=request.event_id,
        admin_id=admin.actor_id,
        successful=report.successful,
        failed=report.failed,
        duplicate=report.duplicate,
    )
    queue_event(
        db,
        "bulk_request_approved",
        request_id=request.id,
        event_id=request.event_id,
        successful=report.successful,
        failed=report.failed,
    )
    return request, report


async def reject_bulk_request(
    db: AsyncSession,
    request_id: int,
    admin: Actor,
    reason: str,
    reason_code: str = "CUSTOM",
    *,
    now: Optional[datetime] = None,
    limits: Optional[BulkLimits] = None,
) -> BulkRegistrationRequest:
    """Reject a pending request. No registrations are created."""
    admin.require_admin()
    now = now or utcnow()
    limits = limits or BulkLimits.from_settings()

    reason = (reason or "").strip()
    if len(reason) < limits.rejection_reason_min_length:
        raise ValidationError(
            f"Rejection reason must be at least {limits.rejection_reason_min_length} characters.",
            min_length=limits.rejection_reason_min_length,
        )
    reason_code = (reason_code or "CUSTOM").upper()
    if reason_code not in REJECTION_REASON_CODES:
        raise ValidationError(
            f"Unknown rejection reason code '{reason_code}'.",
            allowed=sorted(REJECTION_REASON_CODES),
        )

    request = await get_request(db, request_id, lock=True)
    _ensure_decidable(request, now)

    request.status = BulkRequestStatus.REJECTED
    request.rejected_by_admin_id = admin.actor_id
    request.rejected_at = now
    request.rejection_reason_code = reason_code
    request.rejection_reason_text = reason
    await _close_log(db, request.bulk_log_id, BulkLogStatus.FAILED)
    await db.flush()

    record_approval_decision("rejected")
    audit_logger.info(
        "bulk_request_rejected",
        request_id=request.id,
        event_id=request.event_id,
        admin_id=admin.actor_id,
        reason_code=reason_code,
    )
    queue_event(
        db,
        "bulk_request_rejected",
        request_id=request.id,
        event_id=request.event_id,
        reason_code=reason_code,
        reason=reason,
    )
    return request
