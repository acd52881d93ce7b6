"""
TTL-aware cache layer over the external Redis store.

Values are wrapped as ``{data, createdAt, ttl}`` and the store's own expiry is
set ``cache_store_ttl_buffer_seconds`` past the logical TTL, so the logical
check here always fires first.
"""

import json
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, TYPE_CHECKING

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.config import HubConfig
from shared.errors import StoreUnavailable
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class CacheLayer:
    """get/set/delete against the store with logical expiry and a key index."""

    INDEX_KEY = "cache_keys"

    def __init__(
        self,
        config: HubConfig,
        *,
        redis_client: Optional[redis.Redis] = None,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis_url = config.redis_url
        self.store_ttl_buffer = config.cache_store_ttl_buffer_seconds
        self.logger = get_logger("hub.cache")
        self.metrics = metrics
        self._clock = clock
        self._redis: Optional[redis.Redis] = redis_client

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
        return self._redis

    @contextmanager
    def _guard(self, operation: str, key: str):
        try:
            yield
        except (RedisError, OSError) as exc:
            self.logger.error("Cache store error", operation=operation, key=key, error=str(exc))
            raise StoreUnavailable(details={"operation": operation}) from exc

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _record_access(self, key: str, hit: bool) -> None:
        if self.metrics is None:
            return
        namespace = key.split(":", 1)[0]
        metric = "cache_hits_total" if hit else "cache_misses_total"
        self.metrics.increment_counter(metric, namespace=namespace)

    def _unwrap(self, key: str, raw: Any) -> "tuple[bool, Any]":
        """Return (fresh, data) for a stored envelope."""
        if raw is None:
            return False, None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            entry = json.loads(raw)
            created_at = int(entry["createdAt"])
            ttl = int(entry["ttl"])
        except (ValueError, TypeError, KeyError) as exc:
            self.logger.warning("Discarding malformed cache entry", key=key, error=str(exc))
            return False, None

        if self._now_ms() > created_at + ttl * 1000:
            return False, None
        return True, entry.get("data")

    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on miss or logical expiry."""
        client = await self._get_redis()
        with self._guard("get", key):
            raw = await client.get(key)

        fresh, data = self._unwrap(key, raw)
        if not fresh and raw is not None:
            await self._discard(key)
        self._record_access(key, hit=fresh)
        return data if fresh else None

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Batched get; only fresh entries appear in the result."""
        key_list = list(keys)
        if not key_list:
            return {}

        client = await self._get_redis()
        with self._guard("mget", key_list[0]):
            raw_values = await client.mget(key_list)

        found: Dict[str, Any] = {}
        for key, raw in zip(key_list, raw_values):
            fresh, data = self._unwrap(key, raw)
            self._record_access(key, hit=fresh)
            if fresh:
                found[key] = data
        return found

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Store ``value`` with a logical TTL."""
        entry = {
            "data": value,
            "createdAt": self._now_ms(),
            "ttl": ttl_seconds,
        }
        client = await self._get_redis()
        with self._guard("set", key):
            await client.set(key, json.dumps(entry), ex=ttl_seconds + self.store_ttl_buffer)

        try:
            with self._guard("index", key):
                await client.sadd(self.INDEX_KEY, key)
        except StoreUnavailable:
            # Index is best-effort; the value itself is written.
            pass

        self.logger.debug("Cached value", key=key, ttl=ttl_seconds)

    async def delete(self, key: str) -> None:
        client = await self._get_redis()
        with self._guard("delete", key):
            await client.delete(key)
            await client.srem(self.INDEX_KEY, key)

    async def _discard(self, key: str) -> None:
        try:
            await self.delete(key)
        except StoreUnavailable:
            self.logger.warning("Failed to delete expired cache entry", key=key)

    async def invalidate_prefix(self, prefix: str) -> int:
        """Delete every indexed key starting with ``prefix``.

        The store has no pattern delete, so this walks the key index. Keys
        written while the index was unreachable are missed.
        """
        client = await self._get_redis()
        with self._guard("smembers", self.INDEX_KEY):
            members = await client.smembers(self.INDEX_KEY)

        matching: List[str] = []
        for member in members or []:
            name = member.decode("utf-8") if isinstance(member, bytes) else member
            if name.startswith(prefix):
                matching.append(name)

        if matching:
            with self._guard("invalidate", prefix):
                await client.delete(*matching)
                await client.srem(self.INDEX_KEY, *matching)
            self.logger.info("Cleared cache prefix", prefix=prefix, keys_count=len(matching))

        return len(matching)

    async def put_raw(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Write an unwrapped JSON document that only the store expires."""
        client = await self._get_redis()
        with self._guard("put_raw", key):
            await client.set(key, json.dumps(value), ex=ttl_seconds)

    async def hash_increment(self, key: str, increments: Mapping[str, int]) -> None:
        """Atomically bump each hash field."""
        client = await self._get_redis()
        with self._guard("hincrby", key):
            for field, amount in increments.items():
                await client.hincrby(key, field, amount)

    async def hash_get_all(self, key: str) -> Dict[str, str]:
        client = await self._get_redis()
        with self._guard("hgetall", key):
            raw = await client.hgetall(key)

        result: Dict[str, str] = {}
        for field, value in (raw or {}).items():
            if isinstance(field, bytes):
                field = field.decode("utf-8")
            if isinstance(value, bytes):
                value = value.decode("utf-8")
            result[field] = value
        return result

    async def hash_set(self, key: str, mapping: Mapping[str, Any], ttl_seconds: int) -> None:
        client = await self._get_redis()
        with self._guard("hset", key):
            await client.hset(key, mapping={field: str(value) for field, value in mapping.items()})
            await client.expire(key, ttl_seconds)

    async def ping(self) -> bool:
        try:
            client = await self._get_redis()
            with self._guard("ping", "-"):
                return bool(await client.ping())
        except StoreUnavailable:
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
