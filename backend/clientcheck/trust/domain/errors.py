"""Error taxonomy for the trust & abuse-control subsystem."""

from __future__ import annotations

from fastapi import status

if hasattr(status, "HTTP_422_UNPROCESSABLE_CONTENT"):
    _HTTP_422 = status.HTTP_422_UNPROCESSABLE_CONTENT
else:  # pragma: no cover - older Starlette builds
    _HTTP_422 = status.HTTP_422_UNPROCESSABLE_ENTITY


class TrustError(Exception):
    """Base class for trust subsystem errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: str = "trust_error"
    retryable: bool = False

    def __init__(self, detail: str | None = None, *, message: str | None = None) -> None:
        super().__init__(message or detail or self.detail)
        if detail:
            self.detail = detail


class ValidationError(TrustError):
    """Malformed input; terminal."""

    status_code = _HTTP_422
    detail = "validation_error"

    def __init__(self, field: str, message: str | None = None) -> None:
        self.field = field
        self.message = message or f"invalid_{field}"
        super().__init__(message=self.message)


class InvalidRequest(ValidationError):
    """A request that can never be served, e.g. one without an actor identity."""

    detail = "invalid_request"


class BusinessRuleError(TrustError):
    """Well-formed input that conflicts with a business rule."""

    status_code = status.HTTP_409_CONFLICT
    detail = "business_rule_violation"


class DuplicateReview(BusinessRuleError):
    detail = "duplicate_review"


class InvalidTransition(BusinessRuleError):
    detail = "invalid_transition"


class Unauthorized(TrustError):
    """Authorization failure; the message never reveals whether the target exists."""

    status_code = status.HTTP_403_FORBIDDEN
    detail = "not_authorized"


class NotFound(TrustError):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "not_found"


class Unavailable(TrustError):
    """Transient store or network failure; callers may retry with backoff."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    detail = "store_unavailable"
    retryable = True
