"""
Pydantic schemas for bulk registration and the approval workflow.
"""

from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field

from app.models.bulk import ActorRole, BulkLogStatus, BulkRequestStatus


class BulkRegisterRequest(BaseModel):
    # Registration numbers, in upload (row) order
    candidates: list[str] = Field(..., min_length=1)
    capacity_override: bool = False
    file_name: Optional[str] = Field(None, max_length=255)


class RowError(BaseModel):
    row: int
    identifier: str
    error: str


class BulkReportResponse(BaseModel):
    status: BulkLogStatus
    log_id: int
    event_id: int
    total: int
    successful: int
    failed: int
    duplicate: int
    waitlisted: int
    attention_required: bool
    capacity_overridden: bool
    errors: list[RowError]


class PendingApprovalResponse(BaseModel):
    status: Literal["PENDING_APPROVAL"] = "PENDING_APPROVAL"
    request_id: int
    log_id: int
    event_id: int
    total_count: int
    expires_at: datetime


class EligibilityResponse(BaseModel):
    can_upload: bool
    constraints: dict


class BulkLogResponse(BaseModel):
    id: int
    event_id: int
    uploaded_by_user_id: int
    uploaded_by_role: ActorRole
    total_attempted: int
    successful: int
    failed: int
    duplicate: int
    waitlisted: int
    file_name: Optional[str]
    status: BulkLogStatus
    capacity_overridden: bool
    attention_required: bool
    error_details: Optional[list[RowError]]
    created_at: datetime

    model_config = {"from_attributes": True}


class BulkRequestResponse(BaseModel):
    id: int
    event_id: int
    bulk_log_id: Optional[int]
    requested_by_user_id: int
    requested_by_role: ActorRole
    total_count: int
    status: BulkRequestStatus
    expires_at: datetime
    approved_by_admin_id: Optional[int]
    approved_at: Optional[datetime]
    rejected_by_admin_id: Optional[int]
    rejected_at: Optional[datetime]
    rejection_reason_code: Optional[str]
    rejection_reason_text: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class PendingSummary(BaseModel):
    total_pending: int
    total_students: int
    expiring_soon: int


class PendingRequestList(BaseModel):
    requests: list[BulkRequestResponse]
    summary: PendingSummary


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)
    reason_code: str = Field(default="CUSTOM", max_length=50)


class ApprovalResponse(BaseModel):
    request: BulkRequestResponse
    report: Optional[BulkReportResponse] = None
