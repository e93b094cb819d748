"""
Shared error handling for the Support Relay.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from .logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class RelayException(Exception):
    """Base exception for Support Relay services."""

    status_code: int = 400

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(RelayException):
    """Validation-related errors."""

    def __init__(self, code: str = "VALIDATION_ERROR", message: str = "Validation failed",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details, status_code=400)


class MissingParameterError(ValidationError):
    """A required request parameter was not supplied."""

    def __init__(self, parameter: str):
        super().__init__(
            "MISSING_PARAMETER",
            f"{parameter} is required",
            {"parameter": parameter}
        )


class SignatureError(RelayException):
    """Webhook signature verification errors."""

    def __init__(self, message: str = "Invalid webhook signature", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_SIGNATURE", message, details, status_code=401)


class ConnectionLimitError(RelayException):
    """Raised when no more streaming sessions can be opened."""

    def __init__(self, limit: int):
        super().__init__(
            "SSE_CONNECTION_LIMIT_EXCEEDED",
            f"Maximum SSE connections ({limit}) exceeded",
            {"limit": limit},
            status_code=503
        )


class ServiceError(RelayException):
    """Service-related errors."""

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details, status_code=500)
