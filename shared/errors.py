"""
Shared error handling for the Directory Access Layer.
"""

import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


def current_trace_id() -> str:
    """Return the active span's trace id, or a fresh id when nothing is recording."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            return f"{span_context.trace_id:032x}"
    return str(uuid.uuid4())


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DirectoryAccessException(Exception):
    """Base exception for Directory Access Layer services."""

    status_code: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None,
                 status_code: Optional[int] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            trace_id=current_trace_id(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthenticationError(DirectoryAccessException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationError(DirectoryAccessException):
    """Authorization-related errors."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class ValidationError(DirectoryAccessException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class InvalidCredentialsError(DirectoryAccessException):
    """Unknown account or wrong password. The two cases share one message."""

    status_code = 401

    def __init__(self, message: str = "Invalid email or password.", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_CREDENTIALS", message, details)


class UnconfirmedAccountError(DirectoryAccessException):
    """Account requires email confirmation before sign-in."""

    status_code = 403

    def __init__(self, message: str = "Please confirm your email before logging in.",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("UNCONFIRMED_ACCOUNT", message, details)


class LockedOutError(DirectoryAccessException):
    """Account is locked after too many failed sign-ins."""

    status_code = 423

    def __init__(self, lockout_end: datetime, details: Optional[Dict[str, Any]] = None):
        self.lockout_end = lockout_end
        super().__init__(
            "LOCKED_OUT",
            f"Your account is locked out. Try again after {lockout_end.isoformat()}.",
            details
        )


class InvalidTokenError(DirectoryAccessException):
    """Credential cannot be parsed, verified, or carries no identity."""

    status_code = 401

    def __init__(self, message: str = "Invalid token", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_TOKEN", message, details)


class InvalidRequestError(DirectoryAccessException):
    """Refresh rejected. Does not reveal which check failed."""

    status_code = 400

    def __init__(self, message: str = "Invalid client request", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_REQUEST", message, details)


class NotFoundError(DirectoryAccessException):
    """Requested resource does not exist."""

    status_code = 404

    def __init__(self, message: str = "The requested resource was not found",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class RateLimitError(DirectoryAccessException):
    """Rate limiting errors."""

    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__("RATE_LIMIT_ERROR", message, details)
