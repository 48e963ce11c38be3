"""
Domain exceptions for the reservation and settlement core.

Services raise these; the API layer converts them to the standard
``{"success": false, "message": ...}`` envelope via ``to_http_exception``.
Background jobs catch them per unit of work.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class DomainError(Exception):
    """Base class for every business-level failure."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationError(DomainError):
    """Malformed input (unparseable time, window outside opening hours). Never retried."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND


class AuthorizationError(DomainError):
    """Actor is not allowed to perform the operation."""

    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(DomainError):
    """Slot taken, reschedule limit reached, or invalid state transition."""

    status_code = status.HTTP_409_CONFLICT


class GatewayError(DomainError):
    """Failure reported by (or while reaching) the payment gateway."""

    status_code = status.HTTP_502_BAD_GATEWAY
    # Funds already moved to the connected account before the failing call
    transfer_id: Optional[str] = None


class GatewayTransientError(GatewayError):
    """Network errors, rate limits and 5xx responses. Safe to retry later."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class GatewayPermanentError(GatewayError):
    """Declines, restricted accounts, invalid requests. Recorded, not retried forever."""

    def __init__(
        self,
        message: str,
        failure_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        transfer_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.failure_code = failure_code or "gateway_error"
        self.transfer_id = transfer_id
