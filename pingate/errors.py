"""Exception taxonomy shared by the domain modules and the HTTP layer."""

from typing import Optional


class PinGateError(Exception):
    """Base exception; carries the HTTP status and machine-readable code."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"error": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class ValidationError(PinGateError):
    """Malformed or out-of-range input."""

    status_code = 400
    code = "validation_error"


class Unauthorized(PinGateError):
    """Missing, expired or mis-signed credential."""

    status_code = 401
    code = "unauthorized"


class Forbidden(PinGateError):
    """Feature disabled or caller does not own the resource."""

    status_code = 403
    code = "forbidden"


class NotFound(PinGateError):
    status_code = 404
    code = "not_found"


class Conflict(PinGateError):
    status_code = 409
    code = "conflict"


class RateLimited(PinGateError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 60):
        super().__init__(message, details={"retry_after": retry_after})
        self.retry_after = retry_after


class ServiceUnavailable(PinGateError):
    status_code = 503
    code = "service_unavailable"


class InternalError(PinGateError):
    status_code = 500
    code = "internal_error"


class PaymentProviderError(InternalError):
    """Raised when a Lightning backend call fails or returns garbage."""

    code = "payment_provider_error"
