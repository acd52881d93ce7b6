"""
Client for the remote registry source document.
"""

import asyncio
from typing import Any, Dict, Optional

import httpx

from shared.config import HubConfig
from shared.errors import UpstreamHTTPError, UpstreamNetworkError, UpstreamTimeout, ValidationError
from shared.logging import get_logger


class RegistrySourceClient:
    """Fetches and structurally checks the published registry document."""

    def __init__(self, config: HubConfig, http_client: httpx.AsyncClient):
        self.source_url = config.registry_source_url
        self.timeout = config.registry_source_timeout_seconds
        self.http_client = http_client
        self.logger = get_logger("hub.registry_source")

    async def fetch(self) -> Dict[str, Any]:
        """Return the raw document; raises on transport, status or shape errors."""
        try:
            response = await asyncio.wait_for(
                self.http_client.get(
                    self.source_url, headers={"Accept": "application/json"}, timeout=self.timeout
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise UpstreamTimeout("Registry source timed out", {"url": self.source_url}) from exc
        except httpx.TransportError as exc:
            raise UpstreamNetworkError("Registry source unreachable", {"url": self.source_url}) from exc

        if not response.is_success:
            self.logger.error(
                "Registry source request failed",
                url=self.source_url,
                status_code=response.status_code,
            )
            raise UpstreamHTTPError(response.status_code)

        try:
            document = response.json()
        except ValueError as exc:
            raise ValidationError("Registry source returned invalid JSON") from exc

        problem = self._structure_problem(document)
        if problem is not None:
            raise ValidationError("Invalid registry structure", [problem])

        self.logger.debug("Registry source fetched", url=self.source_url, servers=len(document["servers"]))
        return document

    @staticmethod
    def _structure_problem(document: Any) -> Optional[Dict[str, str]]:
        if not isinstance(document, dict):
            return {"field": "$", "message": "Document must be an object", "code": "INVALID_TYPE"}
        if not isinstance(document.get("servers"), list):
            return {"field": "servers", "message": "servers must be a list", "code": "INVALID_TYPE"}
        if not document.get("version"):
            return {"field": "version", "message": "version is required", "code": "REQUIRED"}
        return None
