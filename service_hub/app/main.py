"""
MCP Hub service: registry, health, schema federation and proxy routes.
"""

import time
from typing import Any, Callable, Dict, Optional

import httpx
import redis.asyncio as redis
from fastapi import Query, Request, Response

from shared.base_service import BaseService
from shared.config import HubConfig
from shared.errors import NotFoundError, ValidationError
from shared.http import format_iso, get_client_ip, success_response

from service_hub.app.adapters.registry_source import RegistrySourceClient
from service_hub.app.caching.cache_layer import CacheLayer
from service_hub.app.federation.federator import SchemaFederator
from service_hub.app.health.monitor import HealthMonitor
from service_hub.app.health.scheduler import HealthSweepScheduler
from service_hub.app.proxy.gateway import ProxyGateway
from service_hub.app.ratelimit.middleware import RateLimitMiddleware
from service_hub.app.ratelimit.sliding_window import SlidingWindowRateLimiter
from service_hub.app.registry.store import RegistryStore
from service_hub.app.registry.validation import derive_server_id

MAX_PAGE_LIMIT = 100


class HubService(BaseService):
    """Registry and gateway service implementation."""

    def __init__(
        self,
        config: Optional[HubConfig] = None,
        *,
        redis_client: Optional[redis.Redis] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__("hub", config)
        self._owns_http_client = http_client is None
        # Per-call timeouts come from config; no client-wide default.
        self.http_client = http_client or httpx.AsyncClient(timeout=None)

        self.cache = CacheLayer(self.config, redis_client=redis_client, metrics=self.metrics, clock=clock)
        self.rate_limiter = SlidingWindowRateLimiter(self.cache, self.config, metrics=self.metrics, clock=clock)
        self.registry = RegistryStore(
            self.cache,
            RegistrySourceClient(self.config, self.http_client),
            self.config,
            clock=clock,
        )
        self.health_monitor = HealthMonitor(
            self.registry, self.cache, self.http_client, self.config, metrics=self.metrics, clock=clock
        )
        self.health_scheduler = HealthSweepScheduler(self.health_monitor, self.config.health_check_interval_seconds)
        self.federator = SchemaFederator(
            self.registry, self.cache, self.http_client, self.config, metrics=self.metrics, clock=clock
        )
        self.proxy = ProxyGateway(
            self.registry, self.rate_limiter, self.cache, self.http_client, self.config,
            metrics=self.metrics, clock=clock,
        )

        self._setup_hub_routes()

        # Expose service instance via app state for middleware and testing
        self.app.state.rate_limiter = self.rate_limiter
        self.app.state.hub_service = self

    async def on_startup(self):
        if self.config.health_sweep_enabled:
            await self.health_scheduler.start()

    async def on_shutdown(self):
        await self.health_scheduler.stop()
        if self._owns_http_client:
            await self.http_client.aclose()
        await self.cache.close()

    def _setup_service_middleware(self):
        # Innermost; runs after request context and CORS are in place.
        self.app.add_middleware(RateLimitMiddleware)

    async def _require_server(self, server_id: str):
        server = await self.registry.get_by_id(server_id)
        if server is None:
            raise NotFoundError(f"Server {server_id} not found", {"server_id": server_id})
        return server

    def _setup_hub_routes(self):
        """Set up registry and gateway routes."""

        @self.app.get("/")
        async def root():
            """Liveness."""
            return success_response({"status": "healthy", "service": self.service_name})

        @self.app.get("/api/servers")
        async def list_servers(
            q: Optional[str] = Query(None),
            tags: Optional[str] = Query(None),
            verified: Optional[bool] = Query(None),
            limit: int = Query(20, ge=1, le=MAX_PAGE_LIMIT),
            offset: int = Query(0, ge=0),
        ):
            tag_list = [tag.strip() for tag in tags.split(",") if tag.strip()] if tags else None
            page = await self.registry.search(q, tag_list, verified, limit, offset)
            return success_response(page.to_dict())

        @self.app.get("/api/servers/{server_id}")
        async def get_server(server_id: str):
            server = await self._require_server(server_id)
            return success_response(server.to_dict())

        @self.app.get("/api/servers/{server_id}/schema")
        async def get_server_schema(server_id: str):
            """Capability stub derived from the registry record."""
            server = await self._require_server(server_id)
            return success_response({
                "serverId": server.id,
                "schema": {
                    "methods": server.capabilities or [],
                    "version": server.version,
                },
            })

        @self.app.get("/api/servers/{server_id}/proxy-stats")
        async def get_proxy_stats(server_id: str):
            await self._require_server(server_id)
            stats = await self.proxy.get_stats(server_id)
            return success_response(stats.to_dict() if stats else None)

        @self.app.get("/api/health")
        async def get_health(force: bool = Query(False)):
            if force:
                sweep = await self.health_monitor.sweep_all()
                return success_response(sweep.to_dict())

            summary = await self.health_monitor.get_summary()
            if summary is None:
                return success_response({
                    "message": "No health data available. Run health check first.",
                    "timestamp": format_iso(),
                })
            return success_response(summary.to_dict())

        @self.app.get("/api/health/{server_id}")
        async def get_server_health(server_id: str):
            result = await self.health_monitor.get_result(server_id)
            if result is None:
                raise NotFoundError(f"No health data for server {server_id}", {"server_id": server_id})
            return success_response(result.to_dict())

        @self.app.get("/api/schema")
        async def get_federated_schema(refresh: bool = Query(False)):
            schema = await self.federator.federate(refresh=refresh)
            return success_response(schema.to_dict())

        @self.app.post("/api/proxy")
        async def proxy_request(request: Request):
            payload = await self._read_json(request)
            missing = [
                name for name in ("serverId", "path", "method")
                if not isinstance(payload.get(name), str) or not payload.get(name)
            ]
            if missing:
                raise ValidationError(
                    "Missing required fields: serverId, path, method",
                    [{"field": name, "message": f"{name} is required", "code": "REQUIRED_FIELD"} for name in missing],
                )

            caller_headers = payload.get("headers")
            if caller_headers is not None and not isinstance(caller_headers, dict):
                raise ValidationError("headers must be an object", [
                    {"field": "headers", "message": "headers must be an object", "code": "INVALID_TYPE"}
                ])

            result = await self.proxy.forward(
                payload["serverId"],
                payload["method"],
                payload["path"],
                headers=caller_headers,
                body=payload.get("body"),
                client_key=get_client_ip(request),
            )

            response = Response(content=result.body, status_code=result.status_code)
            for name, value in result.headers:
                response.headers.append(name, value)
            if "content-type" not in response.headers:
                response.headers["content-type"] = "application/json"
            response.headers["X-Proxy-Response-Time"] = str(result.response_time_ms)
            response.headers["X-Proxy-Server-Id"] = result.server_id
            return response

        @self.app.post("/api/submit")
        async def submit_server(request: Request):
            candidate = await self._read_json(request)
            if not candidate.get("id") and isinstance(candidate.get("name"), str):
                candidate["id"] = derive_server_id(candidate["name"])

            errors = self.registry.validate(candidate)
            if errors:
                raise ValidationError(errors=[error.to_dict() for error in errors])

            self.logger.info("Server submission accepted for review", server_id=candidate["id"])
            return success_response({
                "serverId": candidate["id"],
                "status": "pending_review",
                "message": "Submission received and queued for maintainer review",
            })

        @self.app.get("/api/stats")
        async def get_stats():
            snapshot = await self.registry.get_snapshot()
            return success_response(snapshot.stats.to_dict())

    async def _read_json(self, request: Request) -> Dict[str, Any]:
        try:
            payload = await request.json()
        except ValueError as exc:
            raise ValidationError("Invalid JSON body", [
                {"field": "$", "message": "Request body must be valid JSON", "code": "INVALID_JSON"}
            ]) from exc
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object", [
                {"field": "$", "message": "Request body must be a JSON object", "code": "INVALID_TYPE"}
            ])
        return payload


def create_app():
    """Create FastAPI application."""
    service = HubService()
    return service.app


if __name__ == "__main__":
    service = HubService()
    service.run()
