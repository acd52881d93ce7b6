#!/usr/bin/env python3
"""
Run one full health sweep over every registered server.

This is the operator-side trigger for the same probe and classification path
the service runs on its schedule. It can be executed from cron, a CI job or a
developer workstation. Results are written to Redis unless ``--dry-run`` is
given, in which case they are only printed.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict

import httpx

from shared.config import HubConfig
from shared.http import format_iso
from shared.logging import configure_logging
from shared.metrics import get_metrics_collector

from service_hub.app.adapters.registry_source import RegistrySourceClient
from service_hub.app.caching.cache_layer import CacheLayer
from service_hub.app.health.monitor import HealthMonitor, summarize
from service_hub.app.registry.store import RegistryStore


async def sweep(config: HubConfig, *, dry_run: bool) -> Dict[str, Any]:
    """Execute the sweep and return the summary with per-server results."""
    metrics = get_metrics_collector("hub-sweep")
    cache = CacheLayer(config, metrics=metrics)
    async with httpx.AsyncClient(timeout=None) as http_client:
        registry = RegistryStore(cache, RegistrySourceClient(config, http_client), config)
        monitor = HealthMonitor(registry, cache, http_client, config, metrics=metrics)
        try:
            if dry_run:
                snapshot = await registry.get_snapshot(include_health=False)
                results = await monitor.probe_many(snapshot.servers)
                summary = summarize(results, format_iso()).to_dict()
                summary["results"] = [result.to_dict() for result in results]
                return summary

            result = await monitor.sweep_all()
            return result.to_dict()
        finally:
            await cache.close()


def _parse_args() -> argparse.Namespace:
    defaults = HubConfig()
    parser = argparse.ArgumentParser(description="Probe every registered MCP server once.")
    parser.add_argument("--redis-url", default=defaults.redis_url, help="Redis connection URL")
    parser.add_argument("--registry-url", default=defaults.registry_source_url, help="Registry source document URL")
    parser.add_argument("--concurrency", type=int, default=defaults.health_max_concurrency, help="Probes per batch")
    parser.add_argument("--timeout", type=float, default=defaults.health_probe_timeout_seconds, help="Per-probe timeout in seconds")
    parser.add_argument("--dry-run", action="store_true", help="Probe without persisting results")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    config = HubConfig(
        redis_url=args.redis_url,
        registry_source_url=args.registry_url,
        health_max_concurrency=args.concurrency,
        health_probe_timeout_seconds=args.timeout,
    )
    configure_logging("hub-sweep", config.log_level)

    try:
        summary = asyncio.run(sweep(config, dry_run=args.dry_run))
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[health-sweep] failed: {exc}", file=sys.stderr)
        return 1

    if args.dry_run:
        print("[health-sweep] DRY RUN - results not persisted")

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
