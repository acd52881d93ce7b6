"""
Base service class for MCP Hub services.
"""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.config import HubConfig, get_config
from shared.errors import HubException, NotFoundError, ValidationError
from shared.http import error_response, format_iso, get_client_ip, internal_error_response
from shared.logging import clear_context, configure_logging, get_logger, set_client_context, set_request_id
from shared.metrics import get_metrics_collector

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": (
        "default-src 'self'; script-src 'self' 'unsafe-inline'; style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data: https:; connect-src 'self' https:;"
    ),
}


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, config: Optional[HubConfig] = None):
        self.service_name = service_name
        self.config = config or get_config()
        self.logger = get_logger(f"{service_name}.service")
        self.metrics = get_metrics_collector(service_name)
        self._start_time = time.time()

        # Configure logging
        configure_logging(service_name, self.config.log_level)

        # Create FastAPI app
        self.app = self._create_app()

        # Set up middleware; registration order is innermost first
        self._setup_service_middleware()
        self._setup_middleware()

        # Set up routes
        self._setup_routes()
        self._setup_exception_handlers()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"MCP Hub - {self.service_name.title()} Service",
            version="1.0.0",
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url="/redoc" if self.config.env == "local" else None,
            lifespan=self._lifespan,
        )

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self.on_startup()
        try:
            yield
        finally:
            await self.on_shutdown()

    async def on_startup(self):
        """Start background work. Override in subclasses."""

    async def on_shutdown(self):
        """Release resources. Override in subclasses."""

    def _setup_service_middleware(self):
        """Register service specific middleware. Override in subclasses."""

    def _setup_middleware(self):
        """Set up middleware."""

        # Request timing middleware
        @self.app.middleware("http")
        async def add_request_timing(request: Request, call_next):
            start_time = time.time()
            request_id = set_request_id(request.headers.get("X-Request-ID"))
            set_client_context(get_client_ip(request))

            try:
                response = await call_next(request)
            except Exception as e:
                self.logger.error(
                    "Unhandled exception",
                    method=request.method,
                    path=request.url.path,
                    error=str(e),
                    exc_info=True,
                )
                self.metrics.record_error(type(e).__name__)
                response = internal_error_response()

            duration = time.time() - start_time
            route = request.scope.get("route")
            endpoint = getattr(route, "path", request.url.path)

            self.metrics.record_http_request(
                method=request.method,
                endpoint=endpoint,
                status_code=response.status_code,
                duration=duration
            )

            self.logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2)
            )

            response.headers["X-Request-ID"] = request_id
            for name, value in SECURITY_HEADERS.items():
                response.headers[name] = value
            clear_context()
            return response

        # CORS middleware, outermost so every response carries the headers
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.config.cors_origins,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "X-API-Key"],
            max_age=86400,
        )

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Liveness; always 200 while the process serves requests."""
            return {
                "status": "healthy",
                "service": self.service_name,
                "uptime_seconds": round(self._get_uptime(), 3),
                "timestamp": format_iso(),
            }

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(
                content=generate_latest(self.metrics.registry),
                media_type=CONTENT_TYPE_LATEST
            )

    def _setup_exception_handlers(self):
        """Render every handled error as the standard envelope."""

        @self.app.exception_handler(HubException)
        async def hub_exception_handler(request: Request, exc: HubException):
            log = self.logger.error if exc.status_code >= 500 else self.logger.warning
            log(
                "Request failed",
                code=exc.code,
                message=exc.message,
                status_code=exc.status_code,
                path=request.url.path,
            )
            self.metrics.record_error(exc.code)
            return error_response(exc)

        @self.app.exception_handler(StarletteHTTPException)
        async def http_exception_handler(request: Request, exc: StarletteHTTPException):
            if exc.status_code == 404:
                hub_exc = NotFoundError()
            elif exc.status_code == 405:
                hub_exc = HubException("METHOD_NOT_ALLOWED", "Method not allowed", status_code=405)
            else:
                hub_exc = HubException("HTTP_ERROR", str(exc.detail), status_code=exc.status_code)
            return error_response(hub_exc, headers=getattr(exc, "headers", None))

        @self.app.exception_handler(RequestValidationError)
        async def request_validation_handler(request: Request, exc: RequestValidationError):
            errors = [
                {
                    "field": ".".join(str(part) for part in error.get("loc", ())[1:]) or "$",
                    "message": error.get("msg", "Invalid value"),
                    "code": "INVALID_VALUE",
                }
                for error in exc.errors()
            ]
            return error_response(ValidationError(errors=errors))

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
