"""
Router-level rate limiting middleware.
"""

from typing import Iterable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from shared.errors import RateLimitExceeded
from shared.http import error_response, get_client_ip
from shared.logging import get_logger

EXEMPT_PATHS = ("/", "/health", "/metrics")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies the sliding window limiter before any route runs."""

    def __init__(self, app, exempt_paths: Iterable[str] = EXEMPT_PATHS):
        super().__init__(app)
        self.exempt_paths = frozenset(exempt_paths)
        self.logger = get_logger("hub.rate_limit_middleware")

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        rate_limiter = request.app.state.rate_limiter
        client_ip = get_client_ip(request)
        result = await rate_limiter.check(client_ip)

        if not result.allowed:
            headers = result.headers()
            headers["Retry-After"] = str(rate_limiter.retry_after(result))
            return error_response(RateLimitExceeded(limit=result.limit, reset=result.reset), headers=headers)

        response = await call_next(request)
        for name, value in result.headers().items():
            response.headers[name] = value
        return response
