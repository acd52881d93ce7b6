"""
Shared error handling for the MCP Hub gateway.
"""

from typing import Any, Dict, List, Optional

from opentelemetry import trace
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error envelope."""

    success: bool = False
    error: str
    code: str
    details: Optional[Dict[str, Any]] = None
    trace_id: Optional[str] = None
    timestamp: str


class HubException(Exception):
    """Base exception for hub components."""

    status_code: int = 500

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self, timestamp: str) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            error=self.message,
            code=self.code,
            details=self.details or None,
            trace_id=trace_id,
            timestamp=timestamp,
        )


class ValidationError(HubException):
    """User input failed validation; details carry every field error."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", errors: Optional[List[Dict[str, str]]] = None):
        details = {"errors": errors} if errors else None
        super().__init__("VALIDATION_ERROR", message, details)
        self.errors = errors or []


class NotFoundError(HubException):
    """Unknown identifier."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class RateLimitExceeded(HubException):
    """Client exhausted its sliding window."""

    status_code = 429

    def __init__(self, limit: int, reset: int, message: str = "Rate limit exceeded"):
        super().__init__("RATE_LIMIT_EXCEEDED", message, {"limit": limit, "remaining": 0, "reset": reset})
        self.limit = limit
        self.reset = reset


class UpstreamTimeout(HubException):
    """Outbound call exceeded its timeout."""

    status_code = 504

    def __init__(self, message: str = "Request timeout", details: Optional[Dict[str, Any]] = None):
        super().__init__("UPSTREAM_TIMEOUT", message, details)


class UpstreamNetworkError(HubException):
    """Outbound call failed at the transport level."""

    status_code = 502

    def __init__(self, message: str = "Network error", details: Optional[Dict[str, Any]] = None):
        super().__init__("UPSTREAM_NETWORK_ERROR", message, details)


class UpstreamHTTPError(HubException):
    """A probed or fetched server answered with a non-success status."""

    status_code = 502

    def __init__(self, upstream_status: int, message: Optional[str] = None):
        super().__init__(
            "UPSTREAM_HTTP_ERROR",
            message or f"Upstream responded with HTTP {upstream_status}",
            {"upstream_status": upstream_status},
        )
        self.upstream_status = upstream_status


class StoreUnavailable(HubException):
    """The external key-value store could not be reached."""

    status_code = 503

    def __init__(self, message: str = "Store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)


class ServerOfflineError(HubException):
    """The target server's last known status is offline."""

    status_code = 503

    def __init__(self, server_id: str):
        super().__init__("SERVER_OFFLINE", f"Server {server_id} is currently offline", {"server_id": server_id})


class PayloadTooLargeError(HubException):
    """Request body exceeds the configured ceiling."""

    status_code = 413

    def __init__(self, size: int, limit: int):
        super().__init__("PAYLOAD_TOO_LARGE", "Request body too large", {"size": size, "limit": limit})


class InternalError(HubException):
    """Unexpected failure; rendered without internal detail."""

    status_code = 500

    def __init__(self, message: str = "Internal server error"):
        super().__init__("INTERNAL_ERROR", message)
