"""
Shared error handling for the Identity Core.

Every failure that crosses a component boundary is an ``IdentityError``
carrying an ``ErrorKind``. The kind gives a stable code and an HTTP-like
status the transport layer maps directly; domain kinds are recoverable by
the caller, upstream kinds are retryable infrastructure failures.
"""

from enum import Enum
from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class ErrorKind(str, Enum):
    """Stable error codes exposed to callers."""

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    UNAUTHORIZED = "UNAUTHORIZED"
    EMAIL_ALREADY_IN_USE = "EMAIL_ALREADY_IN_USE"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_INVALID = "TOKEN_INVALID"
    TOKEN_REQUIRED = "TOKEN_REQUIRED"
    INVALID_TOKEN_PURPOSE = "INVALID_TOKEN_PURPOSE"
    INVALID_REFRESH_TOKEN = "INVALID_REFRESH_TOKEN"
    CLIENT_NOT_FOUND = "CLIENT_NOT_FOUND"
    INVALID_CLIENT_CREDENTIALS = "INVALID_CLIENT_CREDENTIALS"
    INVALID_REDIRECT_URI = "INVALID_REDIRECT_URI"
    INVALID_SCOPE = "INVALID_SCOPE"
    PROVIDER_NOT_CONFIGURED = "PROVIDER_NOT_CONFIGURED"
    MISSING_AUTH_CODE = "MISSING_AUTH_CODE"
    OAUTH_ERROR = "OAUTH_ERROR"
    INVALID_OAUTH_STATE = "INVALID_OAUTH_STATE"
    EMAIL_REQUIRED = "EMAIL_REQUIRED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    @property
    def status_code(self) -> int:
        return _STATUS_BY_KIND[self]

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.UPSTREAM_UNAVAILABLE, ErrorKind.TIMEOUT)


_STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.EMAIL_ALREADY_IN_USE: 409,
    ErrorKind.USER_NOT_FOUND: 404,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.TOKEN_INVALID: 401,
    ErrorKind.TOKEN_REQUIRED: 401,
    ErrorKind.INVALID_TOKEN_PURPOSE: 400,
    ErrorKind.INVALID_REFRESH_TOKEN: 401,
    ErrorKind.CLIENT_NOT_FOUND: 400,
    ErrorKind.INVALID_CLIENT_CREDENTIALS: 401,
    ErrorKind.INVALID_REDIRECT_URI: 400,
    ErrorKind.INVALID_SCOPE: 400,
    ErrorKind.PROVIDER_NOT_CONFIGURED: 400,
    ErrorKind.MISSING_AUTH_CODE: 400,
    ErrorKind.OAUTH_ERROR: 400,
    ErrorKind.INVALID_OAUTH_STATE: 400,
    ErrorKind.EMAIL_REQUIRED: 400,
    ErrorKind.VALIDATION_ERROR: 422,
    ErrorKind.UPSTREAM_UNAVAILABLE: 503,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.INTERNAL_ERROR: 500,
}

_PUBLIC_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.UPSTREAM_UNAVAILABLE: "A dependency is temporarily unavailable",
    ErrorKind.TIMEOUT: "A dependency did not answer in time",
    ErrorKind.INTERNAL_ERROR: "Internal server error",
}


class IdentityError(Exception):
    """Base exception for Identity Core operations."""

    def __init__(self, kind: ErrorKind, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.message = message or kind.value.replace("_", " ").capitalize()
        self.details = details or {}
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return self.kind.value

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def to_response(self, trace_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response; upstream and internal details stay private."""
        if self.kind in _PUBLIC_MESSAGES:
            return ErrorResponse(
                trace_id=trace_id,
                code=self.code,
                message=_PUBLIC_MESSAGES[self.kind],
            )
        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class DomainError(IdentityError):
    """Caller-recoverable failure (bad credentials, bad token, unknown provider...)."""


class UpstreamError(IdentityError):
    """Infrastructure failure talking to the record store or an identity provider."""

    def __init__(self, service: str, kind: ErrorKind = ErrorKind.UPSTREAM_UNAVAILABLE,
                 message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__(kind, f"{service}: {message}", details)


def internal_error() -> IdentityError:
    """Generic error used when an unclassified exception reaches a boundary."""
    return IdentityError(ErrorKind.INTERNAL_ERROR)
