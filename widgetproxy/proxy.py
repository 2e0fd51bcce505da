# widgetproxy/proxy.py
import asyncio
import logging
from typing import Any, Sequence

import httpx
from fastapi import Request
from fastapi.responses import Response, StreamingResponse

import router
from cache import CacheStore, ProxyResult, make_cache_key, resolve_ttl
from config import ProviderConfig
from errors import (
    UnknownProvider,
    UnknownWidgetType,
    UpstreamHttpError,
    UpstreamUnavailable,
)
from headers import DEFAULT_CONTENT_TYPE, ProxyMode, stream_headers, transform_headers
from transform import ContentTransformer, RewriteRule, compile_rules
from upstream import UpstreamClient, UpstreamRequestSpec

logger = logging.getLogger(__name__)

_CONTENT_TYPES = {
    "js": "application/javascript",
    "css": "text/css",
    "html": "text/html",
    "json": "application/json",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "ico": "image/x-icon",
    "svg": "image/svg+xml",
}

_TEXT_SUBTYPES = ("javascript", "json", "xml", "css", "html")

SCRIPT_CACHE_CONTROL = "public, max-age=300"
ASSET_CACHE_CONTROL = "public, max-age=3600"


def guess_content_type(path: str) -> str:
    ext = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return _CONTENT_TYPES.get(ext, "application/octet-stream")


def is_textual(content_type: str) -> bool:
    mime = content_type.split(";", 1)[0].strip().lower()
    if mime.startswith("text/"):
        return True
    if mime.startswith("image/"):
        return False
    return any(sub in mime for sub in _TEXT_SUBTYPES)


def _log_fill_failure(task: asyncio.Task) -> None:
    # Retrieves the error even when the waiting client has already gone.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Cache fill failed: %s", exc)


class ProxyService:
    """Drives upstream fetch -> optional rewrite -> header policy -> response.

    One instance lives for the whole process; the cache store is handed in
    at construction so it can be shared, replaced or flushed explicitly.
    """

    def __init__(
        self,
        settings,
        http_client: httpx.AsyncClient,
        cache: CacheStore | None = None,
        transformer: ContentTransformer | None = None,
    ) -> None:
        self.settings = settings
        self.upstream = UpstreamClient(http_client, timeout=settings.upstream_timeout)
        self.cache = cache
        self.transformer = transformer or ContentTransformer()
        # Compiled once; rule order is part of the configuration.
        self._rules: dict[str, list[RewriteRule]] = {
            name: compile_rules(cfg.rules_for(settings.public_base_url))
            for name, cfg in settings.providers.items()
        }

    @property
    def cache_enabled(self) -> bool:
        return self.cache is not None and self.settings.cache_enabled

    def provider(self, name: str) -> ProviderConfig:
        cfg = self.settings.providers.get(name)
        if cfg is None:
            raise UnknownProvider(name, list(self.settings.providers))
        return cfg

    def rules(self, provider: str) -> list[RewriteRule]:
        return self._rules.get(provider, [])

    def outbound_headers(
        self, provider: ProviderConfig, request: Request, mode: ProxyMode
    ) -> dict[str, str]:
        """Provider defaults plus the few client headers that are safe to copy.

        Everything else the browser sent is dropped.
        """
        headers = dict(provider.headers)
        if provider.forward_user_agent and request.headers.get("user-agent"):
            headers["user-agent"] = request.headers["user-agent"]
        # Only a streamed body reaches the client still encoded.
        if mode is ProxyMode.STREAM and request.headers.get("accept-encoding"):
            headers["accept-encoding"] = request.headers["accept-encoding"]
        return headers

    # ------------------------------------------------------------------
    # Direct path: stream or transform, no cache
    # ------------------------------------------------------------------

    async def handle(
        self,
        target_url: str,
        mode: ProxyMode,
        request: Request,
        provider: str | None = None,
        rules: Sequence[RewriteRule] | None = None,
    ) -> Response:
        name = provider or self.settings.default_provider
        cfg = self.provider(name)
        logger.info("Proxy request %s %s (mode=%s)", request.method, target_url, mode.value)
        spec = UpstreamRequestSpec.build(
            request.method, target_url, self.outbound_headers(cfg, request, mode)
        )
        if mode is ProxyMode.STREAM:
            return await self._stream(spec)
        return await self._transform(spec, self.rules(name) if rules is None else rules)

    async def _stream(self, spec: UpstreamRequestSpec) -> Response:
        upstream = await self.upstream.open(spec)

        async def body():
            # Runs until the client goes away; the upstream connection is
            # released either way.
            try:
                async for chunk in upstream.aiter_raw():
                    yield chunk
            except httpx.TransportError as exc:
                logger.error("Upstream stream interrupted for %s: %s", spec.url, exc)
            finally:
                await upstream.aclose()

        response = StreamingResponse(body(), status_code=upstream.status_code)
        for key, value in stream_headers(upstream.headers):
            response.headers.append(key, value)
        return response

    async def _transform(self, spec: UpstreamRequestSpec, rules: Sequence[RewriteRule]) -> Response:
        upstream = await self.upstream.fetch(spec)
        body = self.transformer.transform(
            upstream.body, upstream.headers.get("content-encoding"), rules
        )
        headers = transform_headers(upstream.headers, body)
        return Response(content=body, status_code=upstream.status_code, headers=headers)

    # ------------------------------------------------------------------
    # Cache-backed path
    # ------------------------------------------------------------------

    async def cached(
        self,
        cache_key: str,
        spec: UpstreamRequestSpec,
        *,
        ttl: int,
        rules: Sequence[RewriteRule] = (),
        default_content_type: str = DEFAULT_CONTENT_TYPE,
        default_cache_control: str | None = None,
        ids: dict[str, Any] | None = None,
    ) -> ProxyResult:
        if self.cache_enabled:
            hit = await self.cache.get(cache_key)
            if hit is not None:
                logger.debug("Cache hit for %s", cache_key)
                return hit

        # Once started, the fetch completes and is cached even if the client
        # disconnects.
        fill = asyncio.create_task(self._fill(
            cache_key, spec,
            ttl=ttl,
            rules=rules,
            default_content_type=default_content_type,
            default_cache_control=default_cache_control,
            ids=ids or {},
        ))
        fill.add_done_callback(_log_fill_failure)
        return await asyncio.shield(fill)

    async def _fill(
        self,
        cache_key: str,
        spec: UpstreamRequestSpec,
        *,
        ttl: int,
        rules: Sequence[RewriteRule],
        default_content_type: str,
        default_cache_control: str | None,
        ids: dict[str, Any],
    ) -> ProxyResult:
        try:
            upstream = await self.upstream.fetch(spec)
        except UpstreamUnavailable as exc:
            raise UpstreamUnavailable(f"Failed to fetch {spec.url}: {exc.message}", **ids) from exc

        if upstream.status_code >= 500:
            logger.error("Upstream error %s for %s", upstream.status_code, spec.url)
            raise UpstreamHttpError(
                upstream.status_code,
                f"Upstream returned {upstream.status_code} for {spec.url}",
                **ids,
            )

        content_type = upstream.headers.get("content-type") or default_content_type
        encoding = upstream.headers.get("content-encoding")
        if is_textual(content_type):
            raw = self.transformer.transform(upstream.body, encoding, rules)
            body: str | bytes = raw.decode("utf-8", errors="replace")
            body_bytes = body.encode("utf-8")
        else:
            body = body_bytes = self.transformer.decompress(upstream.body, encoding)

        headers = transform_headers(
            upstream.headers,
            body_bytes,
            default_content_type=default_content_type,
            default_cache_control=default_cache_control,
        )
        result = ProxyResult(
            status=upstream.status_code,
            body=body,
            content_type=headers["content-type"],
            headers=headers,
        )

        if self.cache_enabled and upstream.status_code < 400:
            await self.cache.set(cache_key, result, ttl)
            logger.info("Cached %s for %ds (%d bytes)", cache_key, ttl, len(body_bytes))
        return result

    async def proxy_widget(self, provider: str, widget_type: str, request: Request) -> ProxyResult:
        cfg = self.provider(provider)
        if widget_type not in cfg.widget_types:
            raise UnknownWidgetType(provider, widget_type, list(cfg.widget_types))

        target = router.widget_url(cfg, widget_type, request.url.query)
        spec = UpstreamRequestSpec.build(
            "GET", target, self.outbound_headers(cfg, request, ProxyMode.TRANSFORM)
        )
        logger.info("Widget request %s/%s -> %s", provider, widget_type, target)
        return await self.cached(
            make_cache_key("widget", provider, widget_type, request.query_params.multi_items()),
            spec,
            ttl=resolve_ttl(cfg, "widget", widget_type, self.settings.cache_ttl),
            rules=self.rules(provider),
            default_content_type=DEFAULT_CONTENT_TYPE,
            default_cache_control=SCRIPT_CACHE_CONTROL,
            ids={"provider": provider, "widgetType": widget_type},
        )

    async def proxy_asset(self, provider: str, asset_path: str, request: Request) -> ProxyResult:
        cfg = self.provider(provider)
        target = router.provider_url(cfg, asset_path, request.url.query)
        spec = UpstreamRequestSpec.build(
            "GET", target, self.outbound_headers(cfg, request, ProxyMode.TRANSFORM)
        )
        logger.info("Asset request %s%s -> %s", provider, asset_path, target)
        return await self.cached(
            make_cache_key("asset", provider, asset_path, request.query_params.multi_items()),
            spec,
            ttl=resolve_ttl(cfg, "asset", asset_path, self.settings.cache_ttl),
            default_content_type=guess_content_type(asset_path),
            default_cache_control=ASSET_CACHE_CONTROL,
            ids={"provider": provider, "path": asset_path},
        )

    async def cache_stats(self) -> dict[str, Any]:
        if self.cache is None:
            return {"enabled": False}
        stats = await self.cache.stats()
        stats["enabled"] = self.cache_enabled
        return stats

    async def flush_cache(self) -> None:
        if self.cache is not None:
            await self.cache.flush()
