"""
Shared fixtures for hub service tests.
"""

from typing import Callable, Dict, List, Optional

import httpx
import pytest

from shared.config import HubConfig
from shared.test_helpers import FakeClock, FakeRedis, TestDataFactory

from service_hub.app.adapters.registry_source import RegistrySourceClient
from service_hub.app.caching.cache_layer import CacheLayer
from service_hub.app.ratelimit.sliding_window import SlidingWindowRateLimiter
from service_hub.app.registry.store import RegistryStore

REGISTRY_URL = "https://registry.test/servers.json"


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []
        self.histograms = []

    def increment_counter(self, metric_name: str, **labels):
        self.counters.append((metric_name, labels))

    def observe_histogram(self, metric_name: str, value: float, **labels):
        self.histograms.append((metric_name, value, labels))

    def count(self, metric_name: str, **labels) -> int:
        return sum(
            1 for name, recorded in self.counters
            if name == metric_name and all(recorded.get(k) == v for k, v in labels.items())
        )


class UpstreamRouter:
    """httpx.MockTransport handler dispatching on host.

    Each host maps to a callable taking the request and returning a response
    (or raising an httpx error). Every request is recorded.
    """

    def __init__(self):
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, host: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[host] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.host)
        if handler is None:
            raise httpx.ConnectError("no route to host", request=request)
        return handler(request)

    def requests_to(self, host: str) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.host == host]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def config():
    return HubConfig(
        registry_source_url=REGISTRY_URL,
        health_sweep_enabled=False,
        rate_limit_max_requests=5,
        rate_limit_window_seconds=60,
        health_max_concurrency=2,
    )


@pytest.fixture
def metrics():
    return DummyMetrics()


@pytest.fixture
def cache(config, fake_redis, metrics, clock):
    return CacheLayer(config, redis_client=fake_redis, metrics=metrics, clock=clock)


@pytest.fixture
def router():
    return UpstreamRouter()


@pytest.fixture
async def http_client(router):
    async with httpx.AsyncClient(transport=httpx.MockTransport(router)) as client:
        yield client


@pytest.fixture
def registry_document():
    return TestDataFactory.create_registry_document()


@pytest.fixture
def serve_registry(router, registry_document):
    """Route the registry source URL to ``registry_document``."""

    def _serve(document: Optional[dict] = None, status_code: int = 200):
        payload = registry_document if document is None else document
        router.add("registry.test", lambda request: httpx.Response(status_code, json=payload))

    _serve()
    return _serve


@pytest.fixture
def registry(cache, http_client, config, clock, serve_registry):
    return RegistryStore(cache, RegistrySourceClient(config, http_client), config, clock=clock)


@pytest.fixture
def rate_limiter(cache, config, metrics, clock):
    return SlidingWindowRateLimiter(cache, config, metrics=metrics, clock=clock)
