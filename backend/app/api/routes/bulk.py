"""
Bulk registration and admin approval endpoints.
"""

from typing import Literal, Optional, Union

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.schemas.bulk import (
    ApprovalResponse,
    BulkLogResponse,
    BulkRegisterRequest,
    BulkReportResponse,
    BulkRequestResponse,
    EligibilityResponse,
    PendingApprovalResponse,
    PendingRequestList,
    PendingSummary,
    RejectRequest,
)
from app.services.actors import Actor, AdminActor
from app.services.approval_service import approve_bulk_request, list_pending_requests, reject_bulk_request
from app.services.bulk_registration_service import (
    PendingApproval,
    bulk_register,
    get_upload_eligibility,
    list_bulk_logs,
)
from app.services.interfaces.payment import PaymentProvider
from app.services.provider_factory import get_payment_provider
from app.core.security import get_current_actor, require_admin

router = APIRouter(tags=["Bulk registration"])


@router.post(
    "/events/{event_id}/bulk-register",
    response_model=Union[BulkReportResponse, PendingApprovalResponse],
)
async def bulk_register_endpoint(
    event_id: int,
    payload: BulkRegisterRequest,
    response: Response,
    actor: Actor = Depends(get_current_actor),
    provider: PaymentProvider = Depends(get_payment_provider),
    db: AsyncSession = Depends(get_db),
):
    """
    Register a list of students by registration number.

    Returns the per-row report, or 202 with a pending approval reference
    when an event manager's upload exceeds the approval threshold.
    """
    result = await bulk_register(
        db,
        event_id,
        actor,
        payload.candidates,
        capacity_override=payload.capacity_override,
        file_name=payload.file_name,
        provider=provider,
    )
    if isinstance(result, PendingApproval):
        response.status_code = status.HTTP_202_ACCEPTED
        return PendingApprovalResponse(**result.as_dict())
    return BulkReportResponse(**result.as_dict())


@router.get("/events/{event_id}/bulk-register/eligibility", response_model=EligibilityResponse)
async def eligibility_endpoint(
    event_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await get_upload_eligibility(db, event_id, actor)


@router.get("/bulk-register/logs", response_model=list[BulkLogResponse])
async def bulk_logs_endpoint(
    event_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Upload history. Admins see everyone's uploads."""
    return await list_bulk_logs(db, actor, event_id=event_id, limit=limit)


@router.get("/bulk-requests", response_model=PendingRequestList)
async def pending_requests_endpoint(
    sort_by: Literal["newest", "oldest", "largest", "urgency"] = Query("newest"),
    admin: AdminActor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Pending approval requests. Expired ones are swept to EXPIRED on read."""
    requests, summary = await list_pending_requests(db, admin, sort_by=sort_by)
    return PendingRequestList(
        requests=[BulkRequestResponse.model_validate(r) for r in requests],
        summary=PendingSummary(**summary),
    )


@router.post("/bulk-requests/{request_id}/approve", response_model=ApprovalResponse)
async def approve_endpoint(
    request_id: int,
    admin: AdminActor = Depends(require_admin),
    provider: PaymentProvider = Depends(get_payment_provider),
    db: AsyncSession = Depends(get_db),
):
    request, report = await approve_bulk_request(db, request_id, admin, provider=provider)
    return ApprovalResponse(
        request=BulkRequestResponse.model_validate(request),
        report=BulkReportResponse(**report.as_dict()),
    )


@router.post("/bulk-requests/{request_id}/reject", response_model=ApprovalResponse)
async def reject_endpoint(
    request_id: int,
    payload: RejectRequest,
    admin: AdminActor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    request = await reject_bulk_request(db, request_id, admin, payload.reason, payload.reason_code)
    return ApprovalResponse(request=BulkRequestResponse.model_validate(request))
