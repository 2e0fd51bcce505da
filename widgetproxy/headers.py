# widgetproxy/headers.py
from enum import Enum
from typing import Mapping

import httpx


class ProxyMode(str, Enum):
    STREAM = "stream"
    TRANSFORM = "transform"


# Sent on every response, including preflight and error bodies.
SECURITY_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET, POST, OPTIONS",
    "access-control-allow-headers": "Content-Type, Authorization, X-Requested-With",
    "x-frame-options": "SAMEORIGIN",
    "x-content-type-options": "nosniff",
    "x-xss-protection": "1; mode=block",
    "referrer-policy": "strict-origin-when-cross-origin",
}

# Connection-level headers belong to the ASGI server, not to the proxied body.
_HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "proxy-connection", "te", "trailer", "trailers", "transfer-encoding", "upgrade",
}

DEFAULT_CONTENT_TYPE = "application/javascript"


def stream_headers(upstream_headers: httpx.Headers) -> list[tuple[str, str]]:
    """Return the outbound header list for a streamed response.

    Security headers overlaid with every upstream header (upstream wins), so
    content-length and content-encoding match the untouched body. Repeated
    upstream names such as set-cookie stay separate entries.
    """
    upstream = [
        (key.lower(), value)
        for key, value in upstream_headers.multi_items()
        if key.lower() not in _HOP_BY_HOP
    ]
    names = {key for key, _ in upstream}
    return [(k, v) for k, v in SECURITY_HEADERS.items() if k not in names] + upstream


def transform_headers(
    upstream_headers: Mapping[str, str],
    body: bytes,
    *,
    default_content_type: str = DEFAULT_CONTENT_TYPE,
    default_cache_control: str | None = None,
) -> dict[str, str]:
    """Security headers plus upstream content-type and cache-control only.

    content-length is computed from ``body`` and content-encoding is never
    copied because the body has been decoded.
    """
    headers = dict(SECURITY_HEADERS)
    lowered = {k.lower(): v for k, v in upstream_headers.items()}
    headers["content-type"] = lowered.get("content-type") or default_content_type
    cache_control = lowered.get("cache-control") or default_cache_control
    if cache_control:
        headers["cache-control"] = cache_control
    headers["content-length"] = str(len(body))
    return headers
