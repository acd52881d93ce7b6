"""
HTTP helpers shared by hub services: the uniform JSON envelope and caller
address extraction.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from shared.errors import HubException, InternalError


def format_iso(epoch_seconds: Optional[float] = None) -> str:
    """Format an epoch timestamp as ISO-8601 UTC with millisecond precision."""
    value = datetime.fromtimestamp(time.time() if epoch_seconds is None else epoch_seconds, tz=timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def success_response(
    data: Any,
    *,
    status_code: int = 200,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    payload: Dict[str, Any] = {
        "success": True,
        "data": data,
        "timestamp": format_iso(),
    }
    return JSONResponse(status_code=status_code, content=payload, headers=dict(headers or {}))


def error_response(
    exc: HubException,
    *,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    body = exc.to_response(format_iso()).model_dump(exclude_none=True)
    return JSONResponse(status_code=exc.status_code, content=body, headers=dict(headers or {}))


def internal_error_response(headers: Optional[Mapping[str, str]] = None) -> JSONResponse:
    """Generic 500 envelope; the underlying exception is never rendered."""
    return error_response(InternalError(), headers=headers)


def get_client_ip(request: Request) -> str:
    """Extract the caller's address, preferring edge-supplied headers."""
    connecting_ip = request.headers.get("CF-Connecting-IP")
    if connecting_ip:
        return connecting_ip.strip()

    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return request.client.host if request.client else "unknown"
