from app.models.student import Student
from app.models.event import Event, EventStatus, EventType
from app.models.registration import (
    EventRegistration,
    PaymentStatus,
    RefundStatus,
    RegistrationStatus,
    RegistrationType,
)
from app.models.bulk import (
    ActorRole,
    BulkLogStatus,
    BulkRegistrationLog,
    BulkRegistrationRequest,
    BulkRequestStatus,
)

__all__ = [
    "Student",
    "Event", "EventStatus", "EventType",
    "EventRegistration", "PaymentStatus", "RefundStatus", "RegistrationStatus", "RegistrationType",
    "ActorRole", "BulkLogStatus", "BulkRegistrationLog", "BulkRegistrationRequest", "BulkRequestStatus",
]
