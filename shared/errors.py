"""
Shared error handling for the VMetrics Access Layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class VMetricsException(Exception):
    """Base exception for VMetrics services."""

    status_code: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthenticationError(VMetricsException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class ValidationError(VMetricsException):
    """Validation-related errors."""

    status_code = 422

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ExternalServiceError(VMetricsException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class UpstreamError(ExternalServiceError):
    """Non-2xx, unreachable or unparseable upstream response."""

    def __init__(
        self,
        service: str,
        message: str = "Upstream request failed",
        upstream_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.upstream_status = upstream_status
        details = dict(details or {})
        if upstream_status is not None:
            details.setdefault("upstream_status", upstream_status)
        super().__init__(service, message, details)
        self.code = "UPSTREAM_ERROR"


class RateLimitError(VMetricsException):
    """Rate limiting errors."""

    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__("RATE_LIMIT_ERROR", message, details)
