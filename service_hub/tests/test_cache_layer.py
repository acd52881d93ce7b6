"""
Unit tests for the hub cache layer.
"""

import json

import pytest

from shared.errors import StoreUnavailable

from service_hub.app.caching.cache_layer import CacheLayer


class TestCacheLayer:
    """Test cases for CacheLayer."""

    @pytest.mark.asyncio
    async def test_set_then_get_returns_value(self, cache):
        await cache.set("registry", {"version": "1.0.0"}, 300)

        assert await cache.get("registry") == {"version": "1.0.0"}

    @pytest.mark.asyncio
    async def test_set_wraps_value_and_pads_store_expiry(self, cache, fake_redis, clock, config):
        await cache.set("registry", [1, 2], 300)

        entry = json.loads(fake_redis.values["registry"])
        assert entry == {"data": [1, 2], "createdAt": int(clock.now * 1000), "ttl": 300}
        assert fake_redis.expiry["registry"] == clock.now + 300 + config.cache_store_ttl_buffer_seconds
        assert "registry" in fake_redis.sets[CacheLayer.INDEX_KEY]

    @pytest.mark.asyncio
    async def test_logical_expiry_before_store_expiry(self, cache, fake_redis, clock):
        await cache.set("schema:alpha", {"tools": []}, 10)
        clock.advance(11)

        # Store still holds the key, the logical TTL has passed.
        assert "schema:alpha" in fake_redis.values
        assert await cache.get("schema:alpha") is None
        assert "schema:alpha" not in fake_redis.values

    @pytest.mark.asyncio
    async def test_value_visible_until_ttl_boundary(self, cache, clock):
        await cache.set("health:alpha", {"status": "online"}, 10)
        clock.advance(10)

        assert await cache.get("health:alpha") == {"status": "online"}

    @pytest.mark.asyncio
    async def test_malformed_entry_is_discarded(self, cache, fake_redis):
        fake_redis.values["registry"] = "not json"

        assert await cache.get("registry") is None
        assert "registry" not in fake_redis.values

    @pytest.mark.asyncio
    async def test_get_records_hits_and_misses_by_namespace(self, cache, metrics):
        await cache.set("health:alpha", {"status": "online"}, 10)
        await cache.get("health:alpha")
        await cache.get("health:beta")

        assert metrics.count("cache_hits_total", namespace="health") == 1
        assert metrics.count("cache_misses_total", namespace="health") == 1

    @pytest.mark.asyncio
    async def test_get_many_returns_only_fresh_entries(self, cache, clock):
        await cache.set("health:alpha", {"status": "online"}, 5)
        await cache.set("health:beta", {"status": "offline"}, 100)
        clock.advance(6)

        found = await cache.get_many(["health:alpha", "health:beta", "health:gamma"])

        assert found == {"health:beta": {"status": "offline"}}

    @pytest.mark.asyncio
    async def test_get_many_with_no_keys(self, cache):
        assert await cache.get_many([]) == {}

    @pytest.mark.asyncio
    async def test_delete_removes_value_and_index_entry(self, cache, fake_redis):
        await cache.set("registry", {"version": "1"}, 300)
        await cache.delete("registry")

        assert await cache.get("registry") is None
        assert "registry" not in fake_redis.sets[CacheLayer.INDEX_KEY]

    @pytest.mark.asyncio
    async def test_invalidate_prefix(self, cache, fake_redis):
        await cache.set("schema:alpha", {}, 300)
        await cache.set("schema:beta", {}, 300)
        await cache.set("registry", {}, 300)

        removed = await cache.invalidate_prefix("schema:")

        assert removed == 2
        assert await cache.get("schema:alpha") is None
        assert await cache.get("schema:beta") is None
        assert await cache.get("registry") == {}
        assert fake_redis.sets[CacheLayer.INDEX_KEY] == {"registry"}

    @pytest.mark.asyncio
    async def test_store_outage_raises_store_unavailable(self, cache, fake_redis):
        fake_redis.available = False

        with pytest.raises(StoreUnavailable):
            await cache.get("registry")
        with pytest.raises(StoreUnavailable):
            await cache.set("registry", {}, 10)

    @pytest.mark.asyncio
    async def test_hash_operations(self, cache, fake_redis, clock):
        await cache.hash_increment("proxy_stats:alpha", {"totalRequests": 1, "failedRequests": 0})
        await cache.hash_increment("proxy_stats:alpha", {"totalRequests": 1, "failedRequests": 1})
        await cache.hash_set("proxy_stats:alpha", {"averageResponseTime": 12.5}, 60)

        assert await cache.hash_get_all("proxy_stats:alpha") == {
            "totalRequests": "2",
            "failedRequests": "1",
            "averageResponseTime": "12.5",
        }
        assert fake_redis.expiry["proxy_stats:alpha"] == clock.now + 60

    @pytest.mark.asyncio
    async def test_put_raw_is_not_wrapped(self, cache, fake_redis):
        await cache.put_raw("proxy_log:alpha:1:abc", {"method": "GET"}, 30)

        assert json.loads(fake_redis.values["proxy_log:alpha:1:abc"]) == {"method": "GET"}

    @pytest.mark.asyncio
    async def test_ping_reports_outage_without_raising(self, cache, fake_redis):
        assert await cache.ping() is True
        fake_redis.available = False
        assert await cache.ping() is False
