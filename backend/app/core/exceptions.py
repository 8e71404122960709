"""
Domain error taxonomy for the registration lifecycle.

Services raise these; the API layer renders them through a single
exception handler (see app.main). Each class carries the HTTP status and a
stable machine-readable code so clients can branch without parsing text.

Only TransientStoreError is retryable. Everything else is a business rule
or caller mistake and is surfaced verbatim.
"""

from typing import Any, Optional


class RegistrationError(Exception):
    status_code: int = 400
    code: str = "REGISTRATION_ERROR"
    retryable: bool = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"detail": self.message, "error": self.code, **self.details}


class ValidationError(RegistrationError):
    status_code = 422
    code = "VALIDATION_ERROR"


class NotFoundError(RegistrationError):
    status_code = 404
    code = "NOT_FOUND"


class CapacityError(RegistrationError):
    status_code = 409
    code = "CAPACITY_ERROR"


class EventFullError(CapacityError):
    code = "EVENT_FULL"


class DuplicateRegistrationError(RegistrationError):
    status_code = 409
    code = "ALREADY_REGISTERED"


class AlreadyCancelledError(RegistrationError):
    status_code = 409
    code = "ALREADY_CANCELLED"


class InvalidStateError(RegistrationError):
    status_code = 409
    code = "INVALID_STATE"


class RequestExpiredError(RegistrationError):
    status_code = 410
    code = "REQUEST_EXPIRED"


class OwnershipError(RegistrationError):
    status_code = 403
    code = "FORBIDDEN"


class RateLimitedError(RegistrationError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after_seconds: Optional[int] = None, **details: Any):
        super().__init__(message, **details)
        self.retry_after_seconds = retry_after_seconds


class PaymentNotCompletedError(RegistrationError):
    status_code = 402
    code = "PAYMENT_NOT_COMPLETED"


class PaymentProviderError(RegistrationError):
    status_code = 502
    code = "PAYMENT_PROVIDER_ERROR"


class TransientStoreError(RegistrationError):
    status_code = 503
    code = "STORE_UNAVAILABLE"
    retryable = True
