# widgetproxy/config.py
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

_CHROME_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/140.0.0.0 Safari/537.36"
)


class WidgetType(BaseModel):
    path: str = "/{widgetId}/widgetloader"


class CacheTtls(BaseModel):
    # None falls back to Settings.cache_ttl
    scripts: int | None = 300
    assets: int | None = 3600
    chunks: int | None = 1800


class RewriteRuleConfig(BaseModel):
    pattern: str
    replacement: str
    regex: bool = False


class ProviderConfig(BaseModel):
    name: str
    base_url: str
    widget_id: str = ""
    widget_types: dict[str, WidgetType] = {}
    headers: dict[str, str] = {}
    cache: CacheTtls = Field(default_factory=CacheTtls)

    # Feed hosts the widget script talks to directly, keyed by the name used
    # under /api/{name}/ on this proxy.
    feed_hosts: dict[str, str] = {}
    # JSON fields in the widget script that carry a feed origin.
    feed_url_fields: dict[str, str] = {}

    # Explicit ordered rules; when empty they are derived from the feed tables.
    rewrite_rules: list[RewriteRuleConfig] = []

    forward_user_agent: bool = False

    def widget_path(self, widget_type: str) -> str:
        return self.widget_types[widget_type].path.replace("{widgetId}", self.widget_id)

    def rules_for(self, public_base_url: str) -> list[RewriteRuleConfig]:
        """Return the ordered rewrite rules for widget scripts of this provider.

        Field-specific rules come first so that `"field":"https://host"` is
        rewritten as a unit before the bare-origin rules run.
        """
        if self.rewrite_rules:
            return list(self.rewrite_rules)

        public = public_base_url.rstrip("/")
        rules: list[RewriteRuleConfig] = []
        for field, feed in self.feed_url_fields.items():
            origin = self.feed_hosts.get(feed)
            if origin is None:
                continue
            rules.append(RewriteRuleConfig(
                pattern=f'"{field}":"{origin}"',
                replacement=f'"{field}":"{public}/api/{feed}"',
            ))
        for feed, origin in self.feed_hosts.items():
            rules.append(RewriteRuleConfig(
                pattern=origin,
                replacement=f"{public}/api/{feed}",
            ))
        return rules


def _default_providers() -> dict[str, ProviderConfig]:
    return {
        "sportradar": ProviderConfig(
            name="SportRadar",
            base_url="https://widgets.sir-sportradar.com",
            widget_id="984c87dccac74331a2261fd032f80dbf",
            widget_types={
                "match.lmtPlus": WidgetType(),
                "match.preview": WidgetType(),
            },
            headers={
                "User-Agent": _CHROME_UA,
                "Accept": "*/*",
                "Accept-Encoding": "gzip, deflate, br",
                "Referer": "https://www.tipx10.com/",
            },
            feed_hosts={
                "lt-fn": "https://lt-fn.sir-sportradar.com",
                "ws-fn": "https://ws-fn.sir-sportradar.com",
            },
            feed_url_fields={
                "lmtFishnetFeedsUrl": "lt-fn",
                "cardsFishnetFeedsUrl": "ws-fn",
            },
        ),
    }


class Settings(BaseSettings):
    # Listener
    host: str = "0.0.0.0"         # HOST
    port: int = 3001              # PORT

    # Logging
    log_level: str = "info"       # LOG_LEVEL
    log_format: str = "simple"    # LOG_FORMAT: simple | json

    # Origin that browsers use to reach this proxy; rewritten widget scripts
    # point their feed URLs here.
    public_base_url: str = "http://localhost:3001"  # PUBLIC_BASE_URL

    # Providers. Set via: PROVIDERS='{"acme": {"name": "Acme", "base_url": ...}}'
    providers: dict[str, ProviderConfig] = Field(default_factory=_default_providers)
    default_provider: str = "sportradar"   # DEFAULT_PROVIDER
    provider_base_url: str | None = None   # PROVIDER_BASE_URL (overrides default provider)

    # Upstream
    upstream_timeout: float = 30.0  # UPSTREAM_TIMEOUT (seconds)

    # Cache
    cache_enabled: bool = True        # CACHE_ENABLED
    cache_ttl: int = 300              # CACHE_TTL (seconds)
    cache_max_keys: int = 1000        # CACHE_MAX_KEYS
    cache_check_period: int = 600     # CACHE_CHECK_PERIOD (seconds)
    cache_key_prefix: str = "widgetproxy:"  # CACHE_KEY_PREFIX (Redis only)
    redis_url: str | None = None      # REDIS_URL

    # Demo / preview pages
    static_dir: str = str(Path(__file__).parent / "static")  # STATIC_DIR
    preview_widget_type: str = "match.lmtPlus" # PREVIEW_WIDGET_TYPE
    preview_match_id: str = "61939220"         # PREVIEW_MATCH_ID

    def model_post_init(self, __context) -> None:
        if self.provider_base_url and self.default_provider in self.providers:
            self.providers[self.default_provider].base_url = self.provider_base_url

    model_config = {"env_file": ".env", "case_sensitive": False}


settings = Settings()
