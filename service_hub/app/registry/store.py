"""
Registry store: cache-or-fetch access to the published server registry.

The snapshot is never allowed to fail outward. Any fault while reading the
cache or fetching the source yields the single-record fallback snapshot,
which is returned but not cached so the next request retries the source.
"""

import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from shared.config import HubConfig
from shared.errors import HubException, StoreUnavailable
from shared.http import format_iso
from shared.logging import get_logger

from service_hub.app.adapters.registry_source import RegistrySourceClient
from service_hub.app.caching.cache_layer import CacheLayer
from service_hub.app.domain.models import (
    FieldError,
    HealthStatus,
    Pagination,
    RegistrySnapshot,
    RegistryStats,
    ServerPage,
    ServerRecord,
)
from service_hub.app.registry.validation import validate_server

REGISTRY_CACHE_KEY = "registry"
HEALTH_KEY_PREFIX = "health:"
DEFAULT_PAGE_LIMIT = 20


def build_fallback_snapshot(now_iso: str) -> RegistrySnapshot:
    """Single demonstration record served when the source is unreachable."""
    record = ServerRecord(
        id="example-mcp",
        name="Example MCP Server",
        description="A sample MCP server for demonstration purposes",
        url="https://example.com/mcp",
        version="1.0.0",
        tags=["example", "demo"],
        author={"name": "MCP Hub Team", "github": "mcp-hub"},
        verified=True,
        health_status=HealthStatus.UNKNOWN,
        last_checked=now_iso,
        capabilities=["query", "chat", "tools"],
        authentication={"type": "none", "required": False},
        created_at=now_iso,
        updated_at=now_iso,
    )
    return RegistrySnapshot(
        version="1.0.0",
        last_updated=now_iso,
        servers=[record],
        stats=RegistryStats(total_servers=1, online_servers=0, total_requests=0),
    )


class RegistryStore:
    """Snapshot access, lookup, search and submission validation."""

    def __init__(
        self,
        cache: CacheLayer,
        source: RegistrySourceClient,
        config: HubConfig,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.source = source
        self.cache_ttl = config.registry_cache_ttl_seconds
        self.logger = get_logger("hub.registry")
        self._clock = clock

    async def get_snapshot(self, include_health: bool = True) -> RegistrySnapshot:
        """Return the current snapshot, overlaid with persisted health results."""
        try:
            snapshot = await self._load_snapshot()
        except (HubException, PydanticValidationError) as exc:
            self.logger.error("Failed to load registry, serving fallback", error=str(exc))
            snapshot = build_fallback_snapshot(format_iso(self._clock()))

        if include_health:
            snapshot = await self._apply_health(snapshot)
        return snapshot

    async def _load_snapshot(self) -> RegistrySnapshot:
        try:
            cached = await self.cache.get(REGISTRY_CACHE_KEY)
        except StoreUnavailable:
            cached = None

        if isinstance(cached, dict):
            try:
                return RegistrySnapshot.model_validate(cached)
            except PydanticValidationError as exc:
                self.logger.warning("Ignoring undecodable cached registry", error=str(exc))

        document = await self.source.fetch()
        snapshot = self._decode(document)

        try:
            await self.cache.set(REGISTRY_CACHE_KEY, snapshot.to_dict(), self.cache_ttl)
        except StoreUnavailable:
            self.logger.warning("Registry fetched but could not be cached")

        self.logger.info("Registry loaded from source", version=snapshot.version, servers=len(snapshot.servers))
        return snapshot

    def _decode(self, document: Dict[str, Any]) -> RegistrySnapshot:
        """Decode records one at a time; unusable records are skipped."""
        servers: List[ServerRecord] = []
        seen_ids = set()
        for index, raw in enumerate(document.get("servers", [])):
            if not isinstance(raw, dict):
                self.logger.warning("Skipping non-object registry record", index=index)
                continue
            try:
                record = ServerRecord.model_validate(raw)
            except PydanticValidationError as exc:
                self.logger.warning("Skipping malformed registry record", index=index, error=str(exc))
                continue
            if record.id in seen_ids:
                self.logger.warning("Skipping duplicate registry record", server_id=record.id)
                continue
            seen_ids.add(record.id)
            servers.append(record)

        return RegistrySnapshot(
            version=str(document["version"]),
            last_updated=document.get("lastUpdated") if isinstance(document.get("lastUpdated"), str) else None,
            servers=servers,
            stats=RegistryStats.model_validate(document.get("stats") if isinstance(document.get("stats"), dict) else {}),
        )

    async def _apply_health(self, snapshot: RegistrySnapshot) -> RegistrySnapshot:
        """Replace each record's status with its latest persisted probe result."""
        keys = [f"{HEALTH_KEY_PREFIX}{server.id}" for server in snapshot.servers]
        try:
            results = await self.cache.get_many(keys)
        except StoreUnavailable:
            self.logger.warning("Health results unavailable, marking servers unknown")
            results = {}

        servers: List[ServerRecord] = []
        for server in snapshot.servers:
            result = results.get(f"{HEALTH_KEY_PREFIX}{server.id}")
            update: Dict[str, Any] = {"health_status": HealthStatus.UNKNOWN}
            if isinstance(result, dict):
                try:
                    update["health_status"] = HealthStatus(result.get("status"))
                except ValueError:
                    pass
                if isinstance(result.get("timestamp"), str):
                    update["last_checked"] = result["timestamp"]
            servers.append(server.model_copy(update=update))

        online = sum(1 for server in servers if server.health_status == HealthStatus.ONLINE)
        stats = snapshot.stats.model_copy(update={"total_servers": len(servers), "online_servers": online})
        return snapshot.model_copy(update={"servers": servers, "stats": stats})

    async def get_by_id(self, server_id: str) -> Optional[ServerRecord]:
        """Linear lookup; None for a legitimate miss."""
        snapshot = await self.get_snapshot()
        return snapshot.find(server_id)

    async def search(
        self,
        query: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        verified: Optional[bool] = None,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
    ) -> ServerPage:
        """Filter with every given criterion ANDed, then paginate."""
        snapshot = await self.get_snapshot()
        servers = snapshot.servers

        if query:
            term = query.lower()
            servers = [
                server for server in servers
                if term in server.name.lower()
                or term in server.description.lower()
                or any(term in tag.lower() for tag in server.tags)
            ]

        if tags:
            wanted = set(tags)
            servers = [server for server in servers if wanted.intersection(server.tags)]

        if verified is not None:
            servers = [server for server in servers if server.verified is verified]

        total = len(servers)
        page = servers[offset:offset + limit]
        return ServerPage(
            servers=page,
            pagination=Pagination(
                total=total,
                limit=limit,
                offset=offset,
                has_more=offset + limit < total,
            ),
        )

    def validate(self, candidate: Any) -> List[FieldError]:
        return validate_server(candidate)
