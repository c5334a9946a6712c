"""
Standardized error response system.

Provides consistent error responses across all API endpoints and maps
domain exceptions from the authentication core onto HTTP statuses.
"""
import logging
import math
import uuid
from datetime import UTC, datetime
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from onboarding_auth.core.exceptions import (
    AccountLockedError,
    AuthError,
    ConfigurationError,
    IdentityExistsError,
    IdentityNotFoundError,
    InvalidCredentialsError,
    MfaAttemptsExhaustedError,
    MfaCodeExpiredError,
    MfaCodeInvalidError,
    MfaSendRateLimitedError,
    MfaStateError,
    PasswordPolicyError,
    ReauthenticationRequiredError,
)

logger = logging.getLogger(__name__)


class ErrorCode:
    """Standard error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


# Domain error -> HTTP status
AUTH_ERROR_STATUS: dict[type[AuthError], int] = {
    InvalidCredentialsError: status.HTTP_401_UNAUTHORIZED,
    AccountLockedError: status.HTTP_429_TOO_MANY_REQUESTS,
    MfaCodeInvalidError: status.HTTP_401_UNAUTHORIZED,
    MfaCodeExpiredError: status.HTTP_401_UNAUTHORIZED,
    MfaAttemptsExhaustedError: status.HTTP_429_TOO_MANY_REQUESTS,
    MfaSendRateLimitedError: status.HTTP_429_TOO_MANY_REQUESTS,
    ReauthenticationRequiredError: status.HTTP_401_UNAUTHORIZED,
    MfaStateError: status.HTTP_409_CONFLICT,
    PasswordPolicyError: status.HTTP_400_BAD_REQUEST,
    IdentityNotFoundError: status.HTTP_404_NOT_FOUND,
    IdentityExistsError: status.HTTP_409_CONFLICT,
}


class ErrorResponse:
    """Standard error response format."""

    @staticmethod
    def create(
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> JSONResponse:
        """
        Create a standardized error response.

        Args:
            code: Machine-readable error code
            message: Human-readable error message
            status_code: HTTP status code
            details: Additional error details (optional)
            request_id: Request correlation ID (optional)
            headers: Extra response headers (optional)

        Returns:
            JSONResponse with standard error format
        """
        error_data: Dict[str, Any] = {
            "error": {
                "code": code,
                "message": message,
            }
        }

        if details:
            error_data["error"]["details"] = details

        if request_id:
            error_data["error"]["request_id"] = request_id

        return JSONResponse(status_code=status_code, content=error_data, headers=headers)


class HTTPError(HTTPException):
    """
    Enhanced HTTPException with standard error response format.

    Usage:
        raise HTTPError(
            status_code=401,
            code=ErrorCode.UNAUTHORIZED,
            message="Authentication required",
        )
    """

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(status_code=status_code, detail=message)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", str(uuid.uuid4()))


def _seconds_until(moment: datetime) -> int:
    return max(1, math.ceil((moment - datetime.now(UTC)).total_seconds()))


async def http_error_handler(request: Request, exc: HTTPError) -> JSONResponse:
    """Handle HTTPError exceptions and return standardized error response."""
    return ErrorResponse.create(
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        request_id=_request_id(request),
    )


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Translate domain authentication errors into the standard envelope."""
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, mapped_status in AUTH_ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = mapped_status
            break

    details: Dict[str, Any] = {}
    headers: Dict[str, str] = {}

    if isinstance(exc, AccountLockedError):
        details["retry_after_seconds"] = exc.retry_after_seconds
        headers["Retry-After"] = str(exc.retry_after_seconds)
    elif isinstance(exc, MfaSendRateLimitedError):
        details["retry_after"] = exc.retry_after.isoformat()
        headers["Retry-After"] = str(_seconds_until(exc.retry_after))
    elif isinstance(exc, (InvalidCredentialsError, MfaCodeInvalidError)) and exc.remaining_attempts is not None:
        details["remaining_attempts"] = exc.remaining_attempts

    return ErrorResponse.create(
        code=exc.code,
        message=exc.message,
        status_code=status_code,
        details=details or None,
        request_id=_request_id(request),
        headers=headers or None,
    )


async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    """Store outages fail the request; they are never reported as auth failures."""
    logger.error(f"Credential store unavailable: {exc.reason}")
    return ErrorResponse.create(
        code=ErrorCode.SERVICE_UNAVAILABLE,
        message="Authentication service temporarily unavailable",
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        request_id=_request_id(request),
    )


def unauthorized(message: str = "Unauthorized", details: Optional[Dict[str, Any]] = None) -> HTTPError:
    """Create a 401 UNAUTHORIZED error."""
    return HTTPError(
        status_code=status.HTTP_401_UNAUTHORIZED,
        code=ErrorCode.UNAUTHORIZED,
        message=message,
        details=details,
    )
