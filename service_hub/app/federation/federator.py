"""
Schema federator: fetches per-server capability documents and merges them
into one namespaced schema.
"""

import asyncio
import json
import time
from typing import Any, Callable, List, Optional, TYPE_CHECKING

import httpx
from pydantic import ValidationError as PydanticValidationError

from shared.config import HubConfig
from shared.errors import HubException, StoreUnavailable
from shared.http import format_iso
from shared.logging import get_logger

from service_hub.app.caching.cache_layer import CacheLayer
from service_hub.app.domain.models import (
    FederatedSchema,
    HealthStatus,
    PromptDefinition,
    ResourceDefinition,
    ServerRecord,
    ServerSchema,
    ToolDefinition,
)
from service_hub.app.federation.merge import merge_schemas
from service_hub.app.registry.store import RegistryStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

FEDERATED_SCHEMA_KEY = "federated_schema"
SCHEMA_KEY_PREFIX = "schema:"
SCHEMA_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "MCP-Hub-Schema-Fetcher/1.0",
}


class SchemaTooLarge(Exception):
    """Schema document exceeded the configured byte ceiling."""


def _entries(raw: Any) -> List[dict]:
    if not isinstance(raw, list):
        return []
    return [entry for entry in raw if isinstance(entry, dict)]


def _text(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


def normalize_schema(document: dict, server: ServerRecord, fetched_at: str) -> ServerSchema:
    """Type the raw document and tag every definition with the server namespace."""
    namespace = document.get("namespace")
    if not isinstance(namespace, str) or not namespace:
        namespace = server.id

    tools = [
        ToolDefinition(
            name=_text(entry.get("name")) or "unnamed",
            description=_text(entry.get("description")),
            input_schema=entry.get("inputSchema"),
            output_schema=entry.get("outputSchema"),
            namespace=namespace,
        )
        for entry in _entries(document.get("tools"))
    ]
    resources = [
        ResourceDefinition(
            name=_text(entry.get("name")) or "unnamed",
            description=_text(entry.get("description")),
            uri=_text(entry.get("uri")),
            mime_type=entry.get("mimeType") if isinstance(entry.get("mimeType"), str) else None,
            namespace=namespace,
        )
        for entry in _entries(document.get("resources"))
    ]
    prompts = [
        PromptDefinition(
            name=_text(entry.get("name")) or "unnamed",
            description=_text(entry.get("description")),
            arguments=entry.get("arguments") if isinstance(entry.get("arguments"), list) else [],
            namespace=namespace,
        )
        for entry in _entries(document.get("prompts"))
    ]
    capabilities = document.get("capabilities")

    return ServerSchema(
        server_id=server.id,
        server_name=server.name,
        version=_text(document.get("version")) or "1.0.0",
        namespace=namespace,
        tools=tools,
        resources=resources,
        prompts=prompts,
        capabilities=[cap for cap in capabilities if isinstance(cap, str)] if isinstance(capabilities, list) else [],
        last_fetched=fetched_at,
    )


class SchemaFederator:
    """Builds and caches the federated schema across online servers."""

    def __init__(
        self,
        registry: RegistryStore,
        cache: CacheLayer,
        http_client: httpx.AsyncClient,
        config: HubConfig,
        *,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.cache = cache
        self.http_client = http_client
        self.schema_path = config.schema_path
        self.fetch_timeout = config.schema_fetch_timeout_seconds
        self.max_bytes = config.schema_max_bytes
        self.cache_ttl = config.schema_cache_ttl_seconds
        self.metrics = metrics
        self.logger = get_logger("hub.federation")
        self._clock = clock

    def _count(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter("schema_fetches_total", outcome=outcome)

    async def _download(self, url: httpx.URL) -> Optional[bytes]:
        """Stream the body, giving up as soon as it passes the ceiling."""
        request = self.http_client.stream("GET", url, headers=SCHEMA_HEADERS, timeout=self.fetch_timeout)
        async with request as response:
            if not response.is_success:
                self.logger.warning("Schema fetch failed", url=str(url), status_code=response.status_code)
                self._count("http_error")
                return None

            declared = response.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > self.max_bytes:
                raise SchemaTooLarge(declared)

            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > self.max_bytes:
                    raise SchemaTooLarge(len(body))
            return bytes(body)

    async def fetch_one(self, server: ServerRecord) -> Optional[ServerSchema]:
        """Cached or freshly fetched schema for one server; None on any failure."""
        cache_key = f"{SCHEMA_KEY_PREFIX}{server.id}"
        try:
            cached = await self.cache.get(cache_key)
        except StoreUnavailable:
            cached = None
        if isinstance(cached, dict):
            try:
                self._count("cached")
                return ServerSchema.model_validate(cached)
            except PydanticValidationError:
                self.logger.warning("Ignoring undecodable cached schema", server_id=server.id)

        try:
            url = httpx.URL(server.url).join(self.schema_path)
            body = await asyncio.wait_for(self._download(url), timeout=self.fetch_timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            self.logger.warning("Schema fetch timeout", server_id=server.id)
            self._count("timeout")
            return None
        except SchemaTooLarge as exc:
            self.logger.warning("Schema too large", server_id=server.id, size=str(exc), limit=self.max_bytes)
            self._count("too_large")
            return None
        except (httpx.RequestError, httpx.InvalidURL) as exc:
            self.logger.warning("Schema fetch error", server_id=server.id, error=str(exc))
            self._count("network_error")
            return None

        if body is None:
            return None

        try:
            document = json.loads(body)
        except ValueError:
            document = None
        if not isinstance(document, dict):
            self.logger.warning("Schema document is not a JSON object", server_id=server.id)
            self._count("invalid")
            return None

        schema = normalize_schema(document, server, format_iso(self._clock()))
        try:
            await self.cache.set(cache_key, schema.to_dict(), self.cache_ttl)
        except StoreUnavailable:
            self.logger.warning("Schema fetched but could not be cached", server_id=server.id)

        self._count("success")
        return schema

    async def invalidate(self) -> None:
        """Drop the federated schema and, best-effort, every per-server schema."""
        try:
            await self.cache.delete(FEDERATED_SCHEMA_KEY)
            await self.cache.invalidate_prefix(SCHEMA_KEY_PREFIX)
        except StoreUnavailable:
            self.logger.warning("Schema cache invalidation incomplete")

    async def federate(self, refresh: bool = False) -> FederatedSchema:
        """Merged schema of every online server; empty schema on failure."""
        if refresh:
            await self.invalidate()
        else:
            try:
                cached = await self.cache.get(FEDERATED_SCHEMA_KEY)
            except StoreUnavailable:
                cached = None
            if isinstance(cached, dict):
                try:
                    return FederatedSchema.model_validate(cached)
                except PydanticValidationError:
                    self.logger.warning("Ignoring undecodable cached federated schema")

        try:
            federated = await self._build()
        except HubException as exc:
            self.logger.error("Failed to create federated schema", error=str(exc))
            return FederatedSchema(last_updated=format_iso(self._clock()))

        try:
            await self.cache.set(FEDERATED_SCHEMA_KEY, federated.to_dict(), self.cache_ttl)
        except StoreUnavailable:
            self.logger.warning("Federated schema built but could not be cached")
        return federated

    async def _build(self) -> FederatedSchema:
        snapshot = await self.registry.get_snapshot()
        online = [server for server in snapshot.servers if server.health_status == HealthStatus.ONLINE]

        outcomes = await asyncio.gather(
            *(self.fetch_one(server) for server in online),
            return_exceptions=True,
        )
        schemas: List[ServerSchema] = []
        for server, outcome in zip(online, outcomes):
            if isinstance(outcome, BaseException):
                self.logger.error("Schema fetch raised", server_id=server.id, error=str(outcome))
            elif outcome is not None:
                schemas.append(outcome)

        federated = merge_schemas(schemas, format_iso(self._clock()))
        self.logger.info(
            "Federated schema created",
            schemas=len(schemas),
            online_servers=len(online),
            conflicts=len(federated.conflicts),
        )
        return federated
