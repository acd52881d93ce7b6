"""
Health monitor: concurrent probing and status classification of registered
servers.
"""

import asyncio
import time
from typing import Callable, List, Optional, Sequence, TYPE_CHECKING

import httpx

from shared.config import HubConfig
from shared.errors import StoreUnavailable
from shared.http import format_iso
from shared.logging import get_logger

from service_hub.app.caching.cache_layer import CacheLayer
from service_hub.app.domain.models import (
    HealthCheckResult,
    HealthStatus,
    HealthSummary,
    HealthSweep,
    ServerRecord,
)
from service_hub.app.registry.store import RegistryStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

HEALTH_SUMMARY_KEY = "health:summary"
PROBE_HEADERS = {
    "User-Agent": "MCP-Hub-Health-Checker/1.0",
    "Accept": "application/json",
}


def summarize(results: Sequence[HealthCheckResult], last_updated: str) -> HealthSummary:
    """Aggregate counts; totals always equal the number of results."""
    return HealthSummary(
        total_servers=len(results),
        online_servers=sum(1 for r in results if r.status == HealthStatus.ONLINE),
        degraded_servers=sum(1 for r in results if r.status == HealthStatus.DEGRADED),
        offline_servers=sum(1 for r in results if r.status == HealthStatus.OFFLINE),
        last_updated=last_updated,
    )


class HealthMonitor:
    """Probes servers with bounded fan-out and persists the outcomes."""

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
        self.probe_timeout = config.health_probe_timeout_seconds
        self.degraded_threshold = config.health_degraded_threshold_seconds
        self.max_concurrency = config.health_max_concurrency
        self.result_ttl = config.health_result_ttl_seconds
        self.metrics = metrics
        self.logger = get_logger("hub.health")
        self._clock = clock

    def _result(
        self,
        server: ServerRecord,
        status: HealthStatus,
        started: float,
        error: Optional[str] = None,
    ) -> HealthCheckResult:
        finished = self._clock()
        if self.metrics is not None:
            self.metrics.increment_counter("health_probes_total", status=status.value)
        return HealthCheckResult(
            server_id=server.id,
            status=status,
            response_time=int(round((finished - started) * 1000)),
            error=error,
            timestamp=format_iso(finished),
        )

    async def probe(self, server: ServerRecord) -> HealthCheckResult:
        """HEAD the server URL and classify the outcome."""
        started = self._clock()
        try:
            response = await asyncio.wait_for(
                self.http_client.head(
                    server.url, headers=PROBE_HEADERS, follow_redirects=True, timeout=self.probe_timeout
                ),
                timeout=self.probe_timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return self._result(server, HealthStatus.DEGRADED, started, error="timeout")
        except httpx.RequestError as exc:
            self.logger.debug("Probe transport failure", server_id=server.id, error=str(exc))
            return self._result(server, HealthStatus.OFFLINE, started, error="network error")

        elapsed = self._clock() - started
        if response.is_success:
            status = HealthStatus.ONLINE if elapsed <= self.degraded_threshold else HealthStatus.DEGRADED
            return self._result(server, status, started)
        if response.status_code >= 500:
            return self._result(server, HealthStatus.DEGRADED, started, error=f"HTTP {response.status_code}")
        return self._result(server, HealthStatus.OFFLINE, started, error=f"HTTP {response.status_code}")

    async def probe_many(self, servers: Sequence[ServerRecord]) -> List[HealthCheckResult]:
        """Probe in sequential batches of at most ``max_concurrency`` servers.

        A probe that raises instead of classifying is recorded as offline with
        the exception message; it never aborts the sweep.
        """
        results: List[HealthCheckResult] = []
        for start in range(0, len(servers), self.max_concurrency):
            batch = servers[start:start + self.max_concurrency]
            outcomes = await asyncio.gather(
                *(self.probe(server) for server in batch),
                return_exceptions=True,
            )
            for server, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    self.logger.error("Health probe raised", server_id=server.id, error=str(outcome))
                    outcome = HealthCheckResult(
                        server_id=server.id,
                        status=HealthStatus.OFFLINE,
                        error=str(outcome) or "Health check failed",
                        timestamp=format_iso(self._clock()),
                    )
                results.append(outcome)
        return results

    async def sweep_all(self) -> HealthSweep:
        """Probe every registered server and persist results plus summary."""
        snapshot = await self.registry.get_snapshot(include_health=False)
        self.logger.info("Starting health sweep", servers=len(snapshot.servers))

        results = await self.probe_many(snapshot.servers)
        summary = summarize(results, format_iso(self._clock()))
        await self._persist(results, summary)

        self.logger.info(
            "Health sweep completed",
            total=summary.total_servers,
            online=summary.online_servers,
            degraded=summary.degraded_servers,
            offline=summary.offline_servers,
        )
        return HealthSweep(**summary.model_dump(), results=results)

    async def _persist(self, results: Sequence[HealthCheckResult], summary: HealthSummary) -> None:
        writes = [
            self.cache.set(f"health:{result.server_id}", result.to_dict(), self.result_ttl)
            for result in results
        ]
        writes.append(self.cache.set(HEALTH_SUMMARY_KEY, summary.to_dict(), self.result_ttl))

        outcomes = await asyncio.gather(*writes, return_exceptions=True)
        failures = [outcome for outcome in outcomes if isinstance(outcome, StoreUnavailable)]
        if failures:
            self.logger.error("Failed to store health results", failed_writes=len(failures))
        for outcome in outcomes:
            if isinstance(outcome, BaseException) and not isinstance(outcome, StoreUnavailable):
                raise outcome

    async def get_summary(self) -> Optional[HealthSummary]:
        """Last persisted summary, or None when no sweep has been stored."""
        try:
            data = await self.cache.get(HEALTH_SUMMARY_KEY)
        except StoreUnavailable:
            self.logger.warning("Health summary unavailable")
            return None
        return HealthSummary.model_validate(data) if isinstance(data, dict) else None

    async def get_result(self, server_id: str) -> Optional[HealthCheckResult]:
        try:
            data = await self.cache.get(f"health:{server_id}")
        except StoreUnavailable:
            self.logger.warning("Health result unavailable", server_id=server_id)
            return None
        return HealthCheckResult.model_validate(data) if isinstance(data, dict) else None
