"""
Sliding window rate limiter for the hub, persisted through the cache layer.
"""

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, TYPE_CHECKING

from shared.config import HubConfig
from shared.errors import StoreUnavailable
from shared.logging import get_logger

from service_hub.app.caching.cache_layer import CacheLayer

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


@dataclass(frozen=True)
class RateLimitResult:
    """Admission decision; ``reset`` is an epoch second."""

    allowed: bool
    limit: int
    remaining: int
    reset: int

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
        }


class SlidingWindowRateLimiter:
    """Per-client list of request timestamps inside a trailing window.

    The read-modify-write against the store is not atomic; two concurrent
    requests from one client may both be admitted on the last free slot.
    """

    def __init__(
        self,
        cache: CacheLayer,
        config: HubConfig,
        *,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.window_seconds = config.rate_limit_window_seconds
        self.max_requests = config.rate_limit_max_requests
        self.store_buffer_seconds = config.rate_limit_store_buffer_seconds
        self.metrics = metrics
        self.logger = get_logger("hub.rate_limiter")
        self._clock = clock

    def _make_key(self, client_key: str) -> str:
        """Generate rate limit key."""
        return f"rate_limit:{client_key}"

    def _reset_at(self, earliest_ms: int) -> int:
        return math.ceil((earliest_ms + self.window_seconds * 1000) / 1000)

    async def check(self, client_key: str, scope: str = "router") -> RateLimitResult:
        """Admit or reject one request from ``client_key``."""
        now_ms = int(self._clock() * 1000)
        window_start = now_ms - self.window_seconds * 1000
        key = self._make_key(client_key)

        try:
            stored = await self.cache.get(key)
        except StoreUnavailable:
            self.logger.warning("Rate limit store unavailable, failing open", client_key=client_key)
            return self._fail_open(now_ms)

        timestamps: List[int] = [
            int(ts) for ts in (stored if isinstance(stored, list) else [])
            if isinstance(ts, (int, float)) and ts > window_start
        ]

        if len(timestamps) >= self.max_requests:
            reset = self._reset_at(min(timestamps))
            self.logger.warning(
                "Rate limit exceeded",
                client_key=client_key,
                scope=scope,
                current_count=len(timestamps),
                limit=self.max_requests,
            )
            if self.metrics is not None:
                self.metrics.increment_counter("rate_limit_rejections_total", scope=scope)
            return RateLimitResult(allowed=False, limit=self.max_requests, remaining=0, reset=reset)

        timestamps.append(now_ms)
        try:
            await self.cache.set(key, timestamps, self.window_seconds + self.store_buffer_seconds)
        except StoreUnavailable:
            self.logger.warning("Rate limit store write failed, failing open", client_key=client_key)
            return self._fail_open(now_ms)

        return RateLimitResult(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests - len(timestamps),
            reset=self._reset_at(timestamps[0]),
        )

    def retry_after(self, result: RateLimitResult) -> int:
        """Seconds until a rejected client may try again."""
        return max(0, result.reset - int(self._clock()))

    def _fail_open(self, now_ms: int) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests,
            reset=self._reset_at(now_ms),
        )
