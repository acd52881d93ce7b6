"""
Registry, health and schema data models for the hub.

Models serialize with camelCase aliases so the HTTP surface matches the
registry source document. Source documents are decoded tolerantly: malformed
optional fields fall back to defaults instead of rejecting the record.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class HubModel(BaseModel):
    """Base model with camelCase aliases and tolerant extra handling."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-friendly dictionary using wire names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class HealthStatus(str, Enum):
    ONLINE = "online"
    DEGRADED = "degraded"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class AuthType(str, Enum):
    NONE = "none"
    API_KEY = "api-key"
    OAUTH = "oauth"


class Author(HubModel):
    name: str = ""
    url: Optional[str] = None
    github: Optional[str] = None


class Authentication(HubModel):
    type: AuthType = AuthType.NONE
    required: bool = False

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> Any:
        try:
            return AuthType(value)
        except (ValueError, TypeError):
            return AuthType.NONE

    @field_validator("required", mode="before")
    @classmethod
    def _coerce_required(cls, value: Any) -> bool:
        return value is True


class RateLimitHint(HubModel):
    requests: int = 0
    window: str = ""


class ServerRecord(HubModel):
    """One registered server."""

    id: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    url: str = ""
    version: str = "0.0.0"
    tags: List[str] = Field(default_factory=list)
    author: Author = Field(default_factory=Author)
    verified: bool = False
    health_status: HealthStatus = HealthStatus.UNKNOWN
    last_checked: Optional[str] = None
    capabilities: Optional[List[str]] = None
    authentication: Optional[Authentication] = None
    rate_limit: Optional[RateLimitHint] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("name", "description", "url", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""

    @field_validator("version", mode="before")
    @classmethod
    def _coerce_version(cls, value: Any) -> str:
        return value if isinstance(value, str) and value else "0.0.0"

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, value: Any) -> List[str]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, str)]

    @field_validator("capabilities", mode="before")
    @classmethod
    def _coerce_capabilities(cls, value: Any) -> Optional[List[str]]:
        if not isinstance(value, list):
            return None
        return [item for item in value if isinstance(item, str)]

    @field_validator("author", mode="before")
    @classmethod
    def _coerce_author(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return {}
        return {key: item for key, item in value.items() if isinstance(item, str)}

    @field_validator("verified", mode="before")
    @classmethod
    def _coerce_verified(cls, value: Any) -> bool:
        return value is True

    @field_validator("health_status", mode="before")
    @classmethod
    def _coerce_health(cls, value: Any) -> HealthStatus:
        try:
            return HealthStatus(value)
        except (ValueError, TypeError):
            return HealthStatus.UNKNOWN

    @field_validator("authentication", "rate_limit", mode="before")
    @classmethod
    def _coerce_optional_object(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else None

    @field_validator("last_checked", "created_at", "updated_at", mode="before")
    @classmethod
    def _coerce_optional_text(cls, value: Any) -> Optional[str]:
        return value if isinstance(value, str) else None


class RegistryStats(HubModel):
    total_servers: int = 0
    online_servers: int = 0
    total_requests: int = 0

    @field_validator("total_servers", "online_servers", "total_requests", mode="before")
    @classmethod
    def _coerce_count(cls, value: Any) -> int:
        return value if isinstance(value, int) and not isinstance(value, bool) and value >= 0 else 0


class RegistrySnapshot(HubModel):
    """Versioned server list plus aggregate counters."""

    version: str
    last_updated: Optional[str] = None
    servers: List[ServerRecord] = Field(default_factory=list)
    stats: RegistryStats = Field(default_factory=RegistryStats)

    def find(self, server_id: str) -> Optional[ServerRecord]:
        for server in self.servers:
            if server.id == server_id:
                return server
        return None


class Pagination(HubModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class ServerPage(HubModel):
    servers: List[ServerRecord] = Field(default_factory=list)
    pagination: Pagination


class HealthCheckResult(HubModel):
    """Outcome of one probe; superseded, never mutated."""

    model_config = ConfigDict(frozen=True)

    server_id: str
    status: HealthStatus
    response_time: Optional[int] = None  # milliseconds
    error: Optional[str] = None
    timestamp: str


class HealthSummary(HubModel):
    total_servers: int = 0
    online_servers: int = 0
    degraded_servers: int = 0
    offline_servers: int = 0
    last_updated: str


class HealthSweep(HealthSummary):
    """Summary of a live sweep plus every individual result."""

    results: List[HealthCheckResult] = Field(default_factory=list)


class ProxyStats(HubModel):
    """Rolling per-server proxy counters."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_time: float = 0.0
    last_request: Optional[str] = None


class FieldError(HubModel):
    field: str
    message: str
    code: str


# Schema federation

class ToolDefinition(HubModel):
    name: str
    description: str = ""
    input_schema: Optional[Any] = None
    output_schema: Optional[Any] = None
    namespace: str


class ResourceDefinition(HubModel):
    name: str
    description: str = ""
    uri: str = ""
    mime_type: Optional[str] = None
    namespace: str


class PromptDefinition(HubModel):
    name: str
    description: str = ""
    arguments: List[Any] = Field(default_factory=list)
    namespace: str


class ServerSchema(HubModel):
    """Normalized capability document fetched from one server."""

    server_id: str
    server_name: str
    version: str
    namespace: str
    tools: List[ToolDefinition] = Field(default_factory=list)
    resources: List[ResourceDefinition] = Field(default_factory=list)
    prompts: List[PromptDefinition] = Field(default_factory=list)
    capabilities: List[str] = Field(default_factory=list)
    last_fetched: str


class ConflictKind(str, Enum):
    TOOL = "tool"
    RESOURCE = "resource"
    PROMPT = "prompt"


class SchemaConflict(HubModel):
    type: ConflictKind
    name: str
    servers: List[str]
    resolution: str = "namespace"


class FederatedSchema(HubModel):
    version: str = "1.0.0"
    servers: List[str] = Field(default_factory=list)
    tools: List[ToolDefinition] = Field(default_factory=list)
    resources: List[ResourceDefinition] = Field(default_factory=list)
    prompts: List[PromptDefinition] = Field(default_factory=list)
    capabilities: List[str] = Field(default_factory=list)
    namespaces: List[str] = Field(default_factory=list)
    conflicts: List[SchemaConflict] = Field(default_factory=list)
    last_updated: str
