"""
Header policy for proxied requests and responses.
"""

from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from shared.errors import ValidationError

from service_hub.app.domain.models import ServerRecord

DEFAULT_HEADERS = {
    "User-Agent": "MCP-Hub-Proxy/1.0",
    "Accept": "application/json",
    "Content-Type": "application/json",
}

FORWARDED_REQUEST_HEADERS = frozenset({
    "accept",
    "accept-encoding",
    "accept-language",
    "cache-control",
    "content-type",
    "if-match",
    "if-modified-since",
    "if-none-match",
    "if-unmodified-since",
    "range",
})

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Recomputed by the response we build around the upstream body.
UNFORWARDED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}

REDACTED_HEADERS = frozenset({"authorization", "cookie", "set-cookie"})


def build_upstream_headers(caller_headers: Optional[Mapping[str, Any]], server: ServerRecord) -> httpx.Headers:
    """Fixed defaults, then allow-listed caller headers, then hop-by-hop removal.

    Caller headers are filtered by name before any encoding happens, so an
    unencodable value in a dropped header is ignored. A forwarded value that
    is not ASCII raises ``ValidationError``.
    """
    auth = server.authentication
    forward_authorization = auth is not None and auth.required

    selected: List[Tuple[str, str]] = []
    for name, value in (caller_headers or {}).items():
        if value is None:
            continue
        lowered = str(name).lower()
        if lowered in FORWARDED_REQUEST_HEADERS or (forward_authorization and lowered == "authorization"):
            selected.append((str(name), str(value)))

    invalid = [name for name, value in selected if not value.isascii()]
    if invalid:
        raise ValidationError("Header values must be ASCII", [
            {"field": f"headers.{name}", "message": "Header value must be ASCII", "code": "INVALID_HEADER"}
            for name in invalid
        ])

    headers = httpx.Headers(DEFAULT_HEADERS)
    for name, value in selected:
        headers[name] = value

    for name in HOP_BY_HOP_HEADERS:
        if name in headers:
            del headers[name]

    return headers


def filter_response_headers(upstream: httpx.Headers) -> List[Tuple[str, str]]:
    """Relayable upstream headers; repeated headers stay separate entries."""
    return [
        (name, value)
        for name, value in upstream.multi_items()
        if name.lower() not in UNFORWARDED_RESPONSE_HEADERS
    ]


def headers_for_log(headers: Mapping[str, str], max_chars: int) -> Dict[str, str]:
    """Redact credentials and truncate long values."""
    logged: Dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() in REDACTED_HEADERS:
            logged[name] = "[redacted]"
        elif len(value) > max_chars:
            logged[name] = value[:max_chars] + "..."
        else:
            logged[name] = value
    return logged
