"""
Unit tests for the registry store and its source client.
"""

import httpx
import pytest

from shared.errors import UpstreamHTTPError, UpstreamNetworkError, UpstreamTimeout, ValidationError
from shared.test_helpers import TestDataFactory

from service_hub.app.adapters.registry_source import RegistrySourceClient
from service_hub.app.domain.models import HealthStatus
from service_hub.app.registry.store import REGISTRY_CACHE_KEY


class TestRegistrySourceClient:
    """Test cases for RegistrySourceClient."""

    @pytest.mark.asyncio
    async def test_fetch_returns_document(self, config, http_client, registry_document, serve_registry):
        document = await RegistrySourceClient(config, http_client).fetch()

        assert document["version"] == registry_document["version"]
        assert len(document["servers"]) == 3

    @pytest.mark.asyncio
    async def test_fetch_rejects_http_error(self, config, http_client, serve_registry):
        serve_registry({"error": "gone"}, status_code=503)

        with pytest.raises(UpstreamHTTPError) as exc_info:
            await RegistrySourceClient(config, http_client).fetch()
        assert exc_info.value.upstream_status == 503

    @pytest.mark.asyncio
    async def test_fetch_rejects_bad_structure(self, config, http_client, serve_registry):
        serve_registry({"version": "1.0.0", "servers": "nope"})

        with pytest.raises(ValidationError):
            await RegistrySourceClient(config, http_client).fetch()

    @pytest.mark.asyncio
    async def test_fetch_timeout(self, config, http_client, router):
        def _timeout(request):
            raise httpx.ReadTimeout("slow", request=request)

        router.add("registry.test", _timeout)

        with pytest.raises(UpstreamTimeout):
            await RegistrySourceClient(config, http_client).fetch()

    @pytest.mark.asyncio
    async def test_fetch_network_failure(self, config, http_client, router):
        router.routes.clear()

        with pytest.raises(UpstreamNetworkError):
            await RegistrySourceClient(config, http_client).fetch()


class TestRegistryStore:
    """Test cases for RegistryStore."""

    @pytest.mark.asyncio
    async def test_snapshot_is_fetched_then_cached(self, registry, router, cache):
        first = await registry.get_snapshot()
        second = await registry.get_snapshot()

        assert [server.id for server in first.servers] == ["weather-tools", "code-search", "notes-db"]
        assert second.version == first.version
        assert len(router.requests_to("registry.test")) == 1
        assert (await cache.get(REGISTRY_CACHE_KEY))["version"] == "2.1.0"

    @pytest.mark.asyncio
    async def test_cache_expiry_triggers_refetch(self, registry, router, clock, config):
        await registry.get_snapshot()
        clock.advance(config.registry_cache_ttl_seconds + 1)
        await registry.get_snapshot()

        assert len(router.requests_to("registry.test")) == 2

    @pytest.mark.asyncio
    async def test_fallback_when_source_unreachable(self, registry, router, cache):
        router.routes.clear()

        snapshot = await registry.get_snapshot()

        assert [server.id for server in snapshot.servers] == ["example-mcp"]
        assert snapshot.stats.total_servers == 1
        # The fallback is never cached.
        assert await cache.get(REGISTRY_CACHE_KEY) is None

    @pytest.mark.asyncio
    async def test_fallback_when_store_and_source_down(self, registry, router, fake_redis):
        fake_redis.available = False
        router.routes.clear()

        snapshot = await registry.get_snapshot()

        assert snapshot.servers[0].id == "example-mcp"
        assert snapshot.servers[0].health_status == HealthStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_store_outage_still_serves_source(self, registry, fake_redis):
        fake_redis.available = False

        snapshot = await registry.get_snapshot()

        assert len(snapshot.servers) == 3
        assert all(server.health_status == HealthStatus.UNKNOWN for server in snapshot.servers)

    @pytest.mark.asyncio
    async def test_malformed_and_duplicate_records_are_skipped(self, registry, serve_registry):
        servers = TestDataFactory.create_test_servers()
        serve_registry(TestDataFactory.create_registry_document(
            servers + ["not-an-object", {"name": "missing id"}, dict(servers[0], name="Duplicate")]
        ))

        snapshot = await registry.get_snapshot()

        assert [server.id for server in snapshot.servers] == ["weather-tools", "code-search", "notes-db"]
        assert snapshot.servers[0].name == "Weather Tools"

    @pytest.mark.asyncio
    async def test_health_overlay_replaces_source_status(self, registry, cache, serve_registry):
        servers = TestDataFactory.create_test_servers()
        servers[0]["healthStatus"] = "offline"
        serve_registry(TestDataFactory.create_registry_document(servers))
        await cache.set("health:weather-tools", {
            "serverId": "weather-tools",
            "status": "online",
            "timestamp": "2024-02-02T00:00:00.000Z",
        }, 600)

        snapshot = await registry.get_snapshot()

        weather = snapshot.find("weather-tools")
        assert weather.health_status == HealthStatus.ONLINE
        assert weather.last_checked == "2024-02-02T00:00:00.000Z"
        assert snapshot.find("code-search").health_status == HealthStatus.UNKNOWN
        assert snapshot.stats.online_servers == 1
        assert snapshot.stats.total_servers == 3

    @pytest.mark.asyncio
    async def test_get_by_id(self, registry):
        assert (await registry.get_by_id("code-search")).name == "Code Search"
        assert await registry.get_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_search_query_matches_name_description_and_tags(self, registry):
        by_description = await registry.search(query="FULL TEXT")
        by_tag = await registry.search(query="weath")

        assert [server.id for server in by_description.servers] == ["notes-db"]
        assert [server.id for server in by_tag.servers] == ["weather-tools"]

    @pytest.mark.asyncio
    async def test_search_filters_are_combined(self, registry):
        page = await registry.search(tags=["search"], verified=True)

        assert [server.id for server in page.servers] == ["code-search"]
        assert page.pagination.total == 1

    @pytest.mark.asyncio
    async def test_search_tags_match_any(self, registry):
        page = await registry.search(tags=["weather", "notes"])

        assert {server.id for server in page.servers} == {"weather-tools", "notes-db"}

    @pytest.mark.asyncio
    async def test_search_pagination(self, registry):
        first = await registry.search(limit=2, offset=0)
        last = await registry.search(limit=2, offset=2)
        beyond = await registry.search(limit=2, offset=10)

        assert len(first.servers) == 2
        assert first.pagination.has_more is True
        assert [server.id for server in last.servers] == ["notes-db"]
        assert last.pagination.has_more is False
        assert beyond.servers == []
        assert beyond.pagination.total == 3

    @pytest.mark.asyncio
    async def test_invalid_cached_snapshot_is_ignored(self, registry, cache, router):
        await cache.set(REGISTRY_CACHE_KEY, {"servers": "bad"}, 300)

        snapshot = await registry.get_snapshot()

        assert len(snapshot.servers) == 3
        assert len(router.requests_to("registry.test")) == 1

