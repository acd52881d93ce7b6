"""
Proxy gateway: bounded, validated forwarding to one registered server.
"""

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TYPE_CHECKING

import httpx

from shared.config import HubConfig
from shared.errors import (
    NotFoundError,
    PayloadTooLargeError,
    RateLimitExceeded,
    ServerOfflineError,
    StoreUnavailable,
    UpstreamNetworkError,
    UpstreamTimeout,
    ValidationError,
)
from shared.http import format_iso
from shared.logging import get_logger

from service_hub.app.caching.cache_layer import CacheLayer
from service_hub.app.domain.models import HealthStatus, ProxyStats, ServerRecord
from service_hub.app.proxy.headers import build_upstream_headers, filter_response_headers, headers_for_log
from service_hub.app.ratelimit.sliding_window import SlidingWindowRateLimiter
from service_hub.app.registry.store import RegistryStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass
class ProxyResult:
    """Upstream answer relayed back to the caller."""

    server_id: str
    status_code: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    response_time_ms: int = 0


def origin_of(url: httpx.URL) -> Tuple[str, str, Optional[int]]:
    scheme = url.scheme.lower()
    return scheme, url.host.lower(), url.port or DEFAULT_PORTS.get(scheme)


class ProxyGateway:
    """Forwards one caller request to a registered server's own origin."""

    def __init__(
        self,
        registry: RegistryStore,
        rate_limiter: SlidingWindowRateLimiter,
        cache: CacheLayer,
        http_client: httpx.AsyncClient,
        config: HubConfig,
        *,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.http_client = http_client
        self.timeout = config.proxy_timeout_seconds
        self.max_body_bytes = config.proxy_max_body_bytes
        self.log_ttl = config.proxy_log_ttl_seconds
        self.stats_ttl = config.proxy_stats_ttl_seconds
        self.log_header_max_chars = config.proxy_log_header_max_chars
        self.metrics = metrics
        self.logger = get_logger("hub.proxy")
        self._clock = clock

    async def forward(
        self,
        server_id: str,
        method: str,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
        client_key: str = "unknown",
    ) -> ProxyResult:
        """Validate, forward and record one request.

        Rejections raise before any outbound call. Upstream timeouts and
        transport failures raise after the attempt has been recorded.
        """
        server = await self.registry.get_by_id(server_id)
        if server is None:
            raise NotFoundError(f"Server {server_id} not found", {"server_id": server_id})

        if server.health_status == HealthStatus.OFFLINE:
            raise ServerOfflineError(server_id)

        method = (method or "").upper()
        if method not in ALLOWED_METHODS:
            raise ValidationError(f"Method {method} not allowed", [
                {"field": "method", "message": f"Method {method} not allowed", "code": "INVALID_METHOD"}
            ])

        rate = await self.rate_limiter.check(client_key, scope="proxy")
        if not rate.allowed:
            raise RateLimitExceeded(limit=rate.limit, reset=rate.reset)

        target = self._resolve_target(server, path)
        upstream_headers = build_upstream_headers(headers, server)
        content = self._prepare_body(method, body)

        started = self._clock()
        try:
            response = await asyncio.wait_for(
                self.http_client.request(
                    method, target, headers=upstream_headers, content=content, timeout=self.timeout
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            elapsed_ms = self._elapsed_ms(started)
            await self._record(server.id, target, method, upstream_headers, 0, {}, elapsed_ms, "Request timeout")
            self._observe(server.id, "timeout", elapsed_ms)
            raise UpstreamTimeout("Request timeout", {"server_id": server.id})
        except httpx.RequestError as exc:
            elapsed_ms = self._elapsed_ms(started)
            await self._record(server.id, target, method, upstream_headers, 0, {}, elapsed_ms, "Network error")
            self._observe(server.id, "network_error", elapsed_ms)
            self.logger.warning("Proxy transport failure", server_id=server.id, error=str(exc))
            raise UpstreamNetworkError("Network error", {"server_id": server.id})

        elapsed_ms = self._elapsed_ms(started)
        await self._record(
            server.id, target, method, upstream_headers,
            response.status_code, dict(response.headers), elapsed_ms, None,
        )
        self._observe(server.id, "success" if 200 <= response.status_code < 400 else "failure", elapsed_ms)

        return ProxyResult(
            server_id=server.id,
            status_code=response.status_code,
            headers=filter_response_headers(response.headers),
            body=response.content,
            response_time_ms=elapsed_ms,
        )

    def _resolve_target(self, server: ServerRecord, path: str) -> httpx.URL:
        """Resolve ``path`` against the server URL; the origin may not change."""
        try:
            base = httpx.URL(server.url)
            target = base.join(path)
        except httpx.InvalidURL as exc:
            raise ValidationError("Invalid target path", [
                {"field": "path", "message": str(exc), "code": "INVALID_URL"}
            ]) from exc

        if origin_of(target) != origin_of(base):
            raise ValidationError("Target URL must be within the server's origin", [
                {"field": "path", "message": "Resolved origin differs from the server origin", "code": "ORIGIN_MISMATCH"}
            ])
        return target

    def _prepare_body(self, method: str, body: Any) -> Optional[bytes]:
        if body is None:
            return None

        text = body if isinstance(body, str) else json.dumps(body)
        encoded = text.encode("utf-8")
        if len(encoded) > self.max_body_bytes:
            raise PayloadTooLargeError(size=len(encoded), limit=self.max_body_bytes)

        return encoded if method in BODY_METHODS else None

    def _elapsed_ms(self, started: float) -> int:
        return int(round((self._clock() - started) * 1000))

    def _observe(self, server_id: str, outcome: str, elapsed_ms: int) -> None:
        if self.metrics is None:
            return
        self.metrics.increment_counter("proxy_requests_total", server_id=server_id, outcome=outcome)
        self.metrics.observe_histogram("proxy_request_duration_seconds", elapsed_ms / 1000, server_id=server_id)

    async def _record(
        self,
        server_id: str,
        target: httpx.URL,
        method: str,
        request_headers: httpx.Headers,
        status: int,
        response_headers: Dict[str, str],
        elapsed_ms: int,
        error: Optional[str],
    ) -> None:
        """Persist the log entry and roll the statistics; never raises."""
        now = self._clock()
        timestamp = format_iso(now)
        entry: Dict[str, Any] = {
            "serverId": server_id,
            "targetUrl": str(target),
            "method": method,
            "requestHeaders": headers_for_log(request_headers, self.log_header_max_chars),
            "responseStatus": status,
            "responseHeaders": headers_for_log(response_headers, self.log_header_max_chars),
            "responseTime": elapsed_ms,
            "timestamp": timestamp,
        }
        if error is not None:
            entry["error"] = error

        log_key = f"proxy_log:{server_id}:{int(now * 1000)}:{uuid.uuid4().hex[:9]}"
        try:
            await self.cache.put_raw(log_key, entry, self.log_ttl)
            await self._update_stats(server_id, 200 <= status < 400, elapsed_ms, timestamp)
        except Exception as e:
            self.logger.error("Failed to record proxy request", server_id=server_id, error=str(e))

    async def _update_stats(self, server_id: str, succeeded: bool, elapsed_ms: int, timestamp: str) -> None:
        key = f"proxy_stats:{server_id}"
        await self.cache.hash_increment(key, {
            "totalRequests": 1,
            "successfulRequests": 1 if succeeded else 0,
            "failedRequests": 0 if succeeded else 1,
        })

        # Read-modify-write; concurrent updates may lose a sample.
        current = await self.cache.hash_get_all(key)
        try:
            previous = float(current.get("averageResponseTime", 0))
        except ValueError:
            previous = 0.0
        await self.cache.hash_set(key, {
            "averageResponseTime": (previous + elapsed_ms) / 2,
            "lastRequest": timestamp,
        }, self.stats_ttl)

    async def get_stats(self, server_id: str) -> Optional[ProxyStats]:
        """Rolling statistics, or None if the server was never proxied."""
        try:
            raw = await self.cache.hash_get_all(f"proxy_stats:{server_id}")
        except StoreUnavailable:
            self.logger.warning("Proxy stats unavailable", server_id=server_id)
            return None
        if not raw:
            return None
        return ProxyStats.model_validate(raw)
