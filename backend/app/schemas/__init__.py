from app.schemas.event import (
    EventCreate, EventResponse, CapacityUpdate, CapacityUpdateResponse, RefundQuoteResponse,
)
from app.schemas.registration import (
    RegistrationCreate, RegistrationResponse, CancellationResponse, BatchCancellationResponse,
)
from app.schemas.bulk import (
    BulkRegisterRequest, BulkReportResponse, PendingApprovalResponse, BulkRequestResponse,
)

__all__ = [
    "EventCreate", "EventResponse", "CapacityUpdate", "CapacityUpdateResponse", "RefundQuoteResponse",
    "RegistrationCreate", "RegistrationResponse", "CancellationResponse", "BatchCancellationResponse",
    "BulkRegisterRequest", "BulkReportResponse", "PendingApprovalResponse", "BulkRequestResponse",
]
