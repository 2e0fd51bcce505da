# widgetproxy/errors.py
from typing import Any


class ProxyError(Exception):
    """Base class for failures rendered to the client as a JSON error body."""

    status_code = 500
    error = "Proxy Error"

    def __init__(self, message: str, **identifiers: Any) -> None:
        super().__init__(message)
        self.message = message
        self.identifiers = identifiers

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error, "message": self.message, **self.identifiers}


class UpstreamUnavailable(ProxyError):
    """The provider could not be reached (DNS, refused, timeout, TLS)."""

    status_code = 502


class UpstreamHttpError(ProxyError):
    """The provider answered 5xx on a path that must produce a cacheable result."""

    status_code = 502

    def __init__(self, upstream_status: int, message: str, **identifiers: Any) -> None:
        super().__init__(message, upstreamStatus=upstream_status, **identifiers)
        self.upstream_status = upstream_status


class UnknownProvider(ProxyError):
    status_code = 404
    error = "Provider Not Found"

    def __init__(self, provider: str, available: list[str]) -> None:
        super().__init__(
            f"Provider '{provider}' is not configured",
            provider=provider,
            availableProviders=available,
        )


class UnknownWidgetType(ProxyError):
    status_code = 404
    error = "Widget Type Not Found"

    def __init__(self, provider: str, widget_type: str, available: list[str]) -> None:
        super().__init__(
            f"Widget type '{widget_type}' not found for provider '{provider}'",
            provider=provider,
            widgetType=widget_type,
            availableWidgetTypes=available,
        )


class StaticAssetMissing(Exception):
    """A demo/preview file is absent; the route falls through to 404."""


class DecompressionFailure(Exception):
    """A body labelled as compressed could not be decoded."""
