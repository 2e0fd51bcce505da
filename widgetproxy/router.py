# widgetproxy/router.py
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from config import ProviderConfig


def _with_query(url: str, query: str) -> str:
    return f"{url}?{query}" if query else url


def widget_url(provider: "ProviderConfig", widget_type: str, query: str = "") -> str:
    """Resolve a widget loader URL; the query string is forwarded verbatim."""
    base = provider.base_url.rstrip("/")
    return _with_query(base + provider.widget_path(widget_type), query)


def provider_url(provider: "ProviderConfig", path: str, query: str = "") -> str:
    """Same path on the provider's base URL (licensing, translations, assets)."""
    if not path.startswith("/"):
        path = "/" + path
    return _with_query(provider.base_url.rstrip("/") + path, query)


def feed_url(provider: "ProviderConfig", feed: str, path: str, query: str = "") -> str | None:
    """Map /api/{feed}/{path} to the feed host, or None if the feed is unknown.

    ``path`` is what follows the /api/{feed}/ prefix.
    """
    origin = provider.feed_hosts.get(feed)
    if origin is None:
        return None
    return _with_query(f"{origin.rstrip('/')}/{path.lstrip('/')}", query)


def is_licensing_path(provider: "ProviderConfig", path: str) -> bool:
    return bool(provider.widget_id) and path == f"/{provider.widget_id}/licensing"
