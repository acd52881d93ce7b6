"""
Unit tests for the proxy gateway and its header policy.
"""

import json

import httpx
import pytest

from shared.errors import (
    NotFoundError,
    PayloadTooLargeError,
    RateLimitExceeded,
    ServerOfflineError,
    UpstreamNetworkError,
    UpstreamTimeout,
    ValidationError,
)
from shared.test_helpers import TestDataFactory

from service_hub.app.domain.models import ServerRecord
from service_hub.app.proxy.gateway import ProxyGateway
from service_hub.app.proxy.headers import build_upstream_headers, filter_response_headers, headers_for_log


def _echo(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={"path": request.url.path, "method": request.method},
        headers={"X-Upstream": "yes", "Connection": "keep-alive"},
    )


class TestProxyGateway:
    """Test cases for ProxyGateway."""

    @pytest.fixture
    def gateway(self, registry, rate_limiter, cache, http_client, config, metrics, clock):
        return ProxyGateway(registry, rate_limiter, cache, http_client, config, metrics=metrics, clock=clock)

    @pytest.mark.asyncio
    async def test_forward_relays_upstream_response(self, gateway, router):
        router.add("weather-tools.example.com", _echo)

        result = await gateway.forward("weather-tools", "get", "/v1/forecast", client_key="10.0.0.1")

        assert result.status_code == 200
        assert json.loads(result.body) == {"path": "/v1/forecast", "method": "GET"}
        assert ("x-upstream", "yes") in result.headers
        assert "connection" not in {name for name, _ in result.headers}
        assert result.server_id == "weather-tools"

    @pytest.mark.asyncio
    async def test_relative_path_resolves_against_server_url(self, gateway, router):
        router.add("weather-tools.example.com", _echo)

        result = await gateway.forward("weather-tools", "GET", "tools/list")

        assert json.loads(result.body)["path"] == "/tools/list"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", [
        "https://evil.example.net/steal",
        "//evil.example.net/steal",
        "http://weather-tools.example.com/x",
    ])
    async def test_origin_escape_is_rejected(self, gateway, router, path):
        router.add("weather-tools.example.com", _echo)

        with pytest.raises(ValidationError):
            await gateway.forward("weather-tools", "GET", path)
        assert router.requests_to("weather-tools.example.com") == []

    @pytest.mark.asyncio
    async def test_unknown_server(self, gateway):
        with pytest.raises(NotFoundError):
            await gateway.forward("missing", "GET", "/")

    @pytest.mark.asyncio
    async def test_offline_server_is_refused(self, gateway, cache, router):
        await cache.set("health:weather-tools", {"serverId": "weather-tools", "status": "offline", "timestamp": "t"}, 600)

        with pytest.raises(ServerOfflineError):
            await gateway.forward("weather-tools", "GET", "/")
        assert router.requests_to("weather-tools.example.com") == []

    @pytest.mark.asyncio
    async def test_method_not_allowed(self, gateway):
        with pytest.raises(ValidationError):
            await gateway.forward("weather-tools", "TRACE", "/")

    @pytest.mark.asyncio
    async def test_rate_limited_by_client(self, gateway, router, config):
        router.add("weather-tools.example.com", _echo)
        for _ in range(config.rate_limit_max_requests):
            await gateway.forward("weather-tools", "GET", "/", client_key="10.0.0.9")

        with pytest.raises(RateLimitExceeded) as exc_info:
            await gateway.forward("weather-tools", "GET", "/", client_key="10.0.0.9")
        assert exc_info.value.details["limit"] == config.rate_limit_max_requests

    @pytest.mark.asyncio
    async def test_body_is_serialized_for_body_methods(self, gateway, router):
        seen = {}

        def _capture(request):
            seen["body"] = request.content
            return httpx.Response(201)

        router.add("weather-tools.example.com", _capture)

        await gateway.forward("weather-tools", "POST", "/run", body={"tool": "forecast"})

        assert json.loads(seen["body"]) == {"tool": "forecast"}

    @pytest.mark.asyncio
    async def test_body_dropped_for_get(self, gateway, router):
        seen = {}

        def _capture(request):
            seen["body"] = request.content
            return httpx.Response(200)

        router.add("weather-tools.example.com", _capture)

        await gateway.forward("weather-tools", "GET", "/run", body="ignored")

        assert seen["body"] == b""

    @pytest.mark.asyncio
    async def test_oversized_body_rejected(self, registry, rate_limiter, cache, http_client, config, clock, router):
        small = config.model_copy(update={"proxy_max_body_bytes": 8})
        gateway = ProxyGateway(registry, rate_limiter, cache, http_client, small, clock=clock)
        router.add("weather-tools.example.com", _echo)

        with pytest.raises(PayloadTooLargeError):
            await gateway.forward("weather-tools", "POST", "/run", body="x" * 9)
        assert router.requests_to("weather-tools.example.com") == []

    @pytest.mark.asyncio
    async def test_timeout_is_recorded_and_raised(self, gateway, router, metrics):
        def _timeout(request):
            raise httpx.ReadTimeout("slow", request=request)

        router.add("weather-tools.example.com", _timeout)

        with pytest.raises(UpstreamTimeout):
            await gateway.forward("weather-tools", "GET", "/")

        stats = await gateway.get_stats("weather-tools")
        assert stats.total_requests == 1
        assert stats.failed_requests == 1
        assert metrics.count("proxy_requests_total", server_id="weather-tools", outcome="timeout") == 1

    @pytest.mark.asyncio
    async def test_network_error_is_raised(self, gateway, router):
        def _refuse(request):
            raise httpx.ConnectError("refused", request=request)

        router.add("weather-tools.example.com", _refuse)

        with pytest.raises(UpstreamNetworkError):
            await gateway.forward("weather-tools", "GET", "/")

    @pytest.mark.asyncio
    async def test_stats_roll_forward(self, gateway, router):
        router.add("weather-tools.example.com", _echo)
        assert await gateway.get_stats("weather-tools") is None

        await gateway.forward("weather-tools", "GET", "/")
        router.add("weather-tools.example.com", lambda request: httpx.Response(500))
        await gateway.forward("weather-tools", "GET", "/")

        stats = await gateway.get_stats("weather-tools")
        assert stats.total_requests == 2
        assert stats.successful_requests == 1
        assert stats.failed_requests == 1
        assert stats.average_response_time == 0.0
        assert stats.last_request is not None

    @pytest.mark.asyncio
    async def test_log_entry_redacts_credentials(self, gateway, router, fake_redis):
        router.add("code-search.example.com", _echo)

        await gateway.forward(
            "code-search", "GET", "/search",
            headers={"Authorization": "Bearer secret", "Accept": "application/json"},
        )

        log_keys = [key for key in fake_redis.values if key.startswith("proxy_log:code-search:")]
        assert len(log_keys) == 1
        entry = json.loads(fake_redis.values[log_keys[0]])
        assert entry["requestHeaders"]["authorization"] == "[redacted]"
        assert entry["responseStatus"] == 200
        assert entry["method"] == "GET"

    @pytest.mark.asyncio
    async def test_recording_failure_does_not_fail_request(self, gateway, router, cache, monkeypatch):
        router.add("weather-tools.example.com", _echo)

        async def _broken(*args, **kwargs):
            raise RuntimeError("store write failed")

        monkeypatch.setattr(cache, "put_raw", _broken)

        result = await gateway.forward("weather-tools", "GET", "/")

        assert result.status_code == 200

    @pytest.mark.asyncio
    async def test_request_carries_configured_timeout(self, gateway, router, config):
        router.add("weather-tools.example.com", _echo)

        await gateway.forward("weather-tools", "GET", "/")

        timeout = router.requests_to("weather-tools.example.com")[0].extensions["timeout"]
        assert timeout["read"] == config.proxy_timeout_seconds
        assert timeout["connect"] == config.proxy_timeout_seconds

    @pytest.mark.asyncio
    async def test_non_ascii_header_rejected_before_forwarding(self, gateway, router):
        router.add("weather-tools.example.com", _echo)

        with pytest.raises(ValidationError):
            await gateway.forward("weather-tools", "GET", "/", headers={"Accept": "café"})

        assert router.requests_to("weather-tools.example.com") == []


class TestHeaderPolicy:
    """Test cases for the proxy header helpers."""

    def _server(self, **overrides) -> ServerRecord:
        return ServerRecord.model_validate(TestDataFactory.create_server_record("alpha", **overrides))

    def test_only_allow_listed_headers_are_forwarded(self):
        headers = build_upstream_headers({
            "Accept": "text/plain",
            "Cookie": "session=1",
            "X-Forwarded-For": "1.2.3.4",
            "Connection": "close",
            "If-None-Match": "abc",
        }, self._server())

        assert headers["accept"] == "text/plain"
        assert headers["if-none-match"] == "abc"
        assert headers["user-agent"] == "MCP-Hub-Proxy/1.0"
        assert "cookie" not in headers
        assert "x-forwarded-for" not in headers
        assert "connection" not in headers

    def test_authorization_forwarded_only_when_required(self):
        caller = {"Authorization": "Bearer token"}
        open_server = self._server()
        secured = self._server(authentication={"type": "oauth", "required": True})

        assert "authorization" not in build_upstream_headers(caller, open_server)
        assert build_upstream_headers(caller, secured)["authorization"] == "Bearer token"

    def test_filter_response_headers(self):
        upstream = httpx.Headers({
            "Content-Type": "application/json",
            "Content-Length": "10",
            "Transfer-Encoding": "chunked",
            "ETag": "v1",
        })

        filtered = filter_response_headers(upstream)

        assert {name for name, _ in filtered} == {"content-type", "etag"}

    def test_filter_response_headers_keeps_repeated_headers(self):
        upstream = httpx.Headers([
            ("Set-Cookie", "a=1; Path=/"),
            ("Set-Cookie", "b=2; Path=/"),
            ("Connection", "close"),
        ])

        filtered = filter_response_headers(upstream)

        assert filtered == [("set-cookie", "a=1; Path=/"), ("set-cookie", "b=2; Path=/")]

    def test_unencodable_value_in_dropped_header_is_ignored(self):
        headers = build_upstream_headers({"X-Note": "caf\u00e9\u2603", "Accept": "text/plain"}, self._server())

        assert headers["accept"] == "text/plain"
        assert "x-note" not in headers

    def test_non_ascii_forwarded_value_is_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            build_upstream_headers({"Accept-Language": "fran\u00e7ais"}, self._server())

        assert exc_info.value.errors[0]["field"] == "headers.Accept-Language"

    def test_headers_for_log_truncates(self):
        logged = headers_for_log({"X-Long": "a" * 10, "Set-Cookie": "s=1"}, max_chars=4)

        assert logged == {"X-Long": "aaaa...", "Set-Cookie": "[redacted]"}
