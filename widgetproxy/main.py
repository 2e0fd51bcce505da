# widgetproxy/main.py
import asyncio
import contextlib
import logging
import os
import platform
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
import redis.asyncio as aioredis
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

import router
from cache import MemoryCacheStore, RedisCacheStore
from config import settings
from errors import ProxyError, StaticAssetMissing
from headers import SECURITY_HEADERS, ProxyMode
from logs import configure_logging, request_id_var
from proxy import ProxyService
from static import StaticLoader, pick_match_id, render_preview

VERSION = "1.0.0"

configure_logging(settings.log_level, settings.log_format)
logger = logging.getLogger(__name__)


async def _sweep_cache(cache, period: int) -> None:
    while True:
        await asyncio.sleep(period)
        removed = cache.sweep()
        if removed:
            logger.debug("Cache sweep removed %d expired entries", removed)


@asynccontextmanager
async def lifespan(app: FastAPI):
    redis_client: aioredis.Redis | None = None
    app.state.started_at = time.monotonic()

    # Shared HTTP client; connection pools are reused across all proxy requests.
    app.state.http_client = httpx.AsyncClient(timeout=settings.upstream_timeout)

    if settings.redis_url:
        redis_client = aioredis.from_url(
            settings.redis_url, encoding="utf-8", decode_responses=True
        )
        await redis_client.ping()  # Fail fast if Redis is unreachable at startup.
        cache = RedisCacheStore(redis_client, settings.cache_key_prefix)
        logger.info("Redis cache connected: %s", settings.redis_url)
    else:
        cache = MemoryCacheStore(settings.cache_max_keys)

    app.state.proxy = ProxyService(settings, app.state.http_client, cache)
    sweeper = asyncio.create_task(_sweep_cache(cache, settings.cache_check_period))
    logger.info(
        "Widget proxy started on %s:%s (providers=%s, default=%s, cache=%s)",
        settings.host, settings.port, ",".join(settings.providers),
        settings.default_provider, "enabled" if settings.cache_enabled else "disabled",
    )

    yield

    logger.info("Shutting down")
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    if isinstance(cache, MemoryCacheStore):
        await cache.flush()
    await app.state.http_client.aclose()
    if redis_client:
        await redis_client.aclose()


app = FastAPI(title="Widget Proxy", version=VERSION, lifespan=lifespan)


def get_proxy(request: Request) -> ProxyService:
    return request.app.state.proxy


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Propagate or generate an X-Request-ID header for end-to-end tracing."""
    req_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = req_id
    token = request_id_var.set(req_id)
    try:
        logger.debug("%s %s", request.method, request.url.path)
        if request.method == "OPTIONS":
            response = Response(status_code=200, headers=SECURITY_HEADERS)
        else:
            response = await call_next(request)
    finally:
        request_id_var.reset(token)
    for key, value in SECURITY_HEADERS.items():
        response.headers.setdefault(key, value)
    response.headers["x-request-id"] = req_id
    return response


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _not_found(request: Request) -> JSONResponse:
    logger.warning(
        "Route not found: %s %s (user-agent=%s)",
        request.method, request.url.path, request.headers.get("user-agent"),
    )
    return JSONResponse(
        status_code=404,
        content={
            "error": "Not Found",
            "message": f"Route {request.method} {request.url.path} not found",
            "method": request.method,
            "path": request.url.path,
            "timestamp": _now(),
        },
    )


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    logger.error("%s for %s: %s", exc.error, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        return _not_found(request)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "message": str(exc.detail),
                 "method": request.method, "path": request.url.path},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error for %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal Server Error", "message": "Unexpected proxy failure"},
        headers=SECURITY_HEADERS,
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

def _uptime(request: Request) -> float:
    return round(time.monotonic() - request.app.state.started_at, 3)


@app.get("/health")
async def health(request: Request, svc: ProxyService = Depends(get_proxy)) -> dict:
    return {
        "status": "healthy",
        "timestamp": _now(),
        "uptime": _uptime(request),
        "cache": "enabled" if svc.cache_enabled else "disabled",
        "version": VERSION,
    }


@app.get("/health/detailed")
async def health_detailed(request: Request, svc: ProxyService = Depends(get_proxy)) -> dict:
    return {
        "status": "healthy",
        "timestamp": _now(),
        "uptime": _uptime(request),
        "cache": await svc.cache_stats(),
        "decompressionFailures": svc.transformer.decompression_failures,
        "process": {
            "pid": os.getpid(),
            "platform": platform.system().lower(),
            "python": platform.python_version(),
        },
        "version": VERSION,
    }


@app.get("/health/ready")
async def health_ready() -> dict:
    return {"status": "ready", "timestamp": _now()}


@app.get("/health/live")
async def health_live() -> dict:
    return {"status": "alive", "timestamp": _now()}


# ---------------------------------------------------------------------------
# Demo / preview pages
# ---------------------------------------------------------------------------

@app.get("/")
@app.get("/demo")
async def demo(request: Request) -> Response:
    try:
        content = StaticLoader(settings.static_dir).read("demo.html")
    except StaticAssetMissing:
        return _not_found(request)
    return Response(content=content, media_type="text/html")


@app.get("/loader/theme.css")
async def loader_theme(request: Request) -> Response:
    try:
        content = StaticLoader(settings.static_dir).read("widget/theme.css")
    except StaticAssetMissing:
        return _not_found(request)
    return Response(content=content, media_type="text/css")


@app.get("/loader/preview")
@app.get("/loader/preview.html")
async def loader_preview(request: Request) -> Response:
    try:
        html = StaticLoader(settings.static_dir).read("widget/preview.html").decode("utf-8")
    except StaticAssetMissing:
        return _not_found(request)
    match_id = pick_match_id(request.query_params.get("matchId"), settings.preview_match_id)
    widget_url = (
        f"{settings.public_base_url.rstrip('/')}/proxy/{settings.default_provider}/"
        f"{settings.preview_widget_type}?matchId={match_id}"
    )
    return Response(content=render_preview(html, widget_url, match_id), media_type="text/html")


# ---------------------------------------------------------------------------
# API description
# ---------------------------------------------------------------------------

@app.get("/api")
async def api_info() -> dict:
    provider = settings.default_provider
    cfg = settings.providers.get(provider)
    widget_type = next(iter(cfg.widget_types), "match.lmtPlus") if cfg else "match.lmtPlus"
    return {
        "name": "Widget Proxy",
        "version": VERSION,
        "status": "running",
        "providers": list(settings.providers),
        "endpoints": {
            "demo": "/",
            "widget": f"/proxy/{provider}/{widget_type}?matchId=123",
            "assets": f"/proxy/{provider}/assets/js/chunk.123.js",
            "provider": f"/proxy/{provider}",
            "feeds": [f"/api/{feed}/..." for feed in (cfg.feed_hosts if cfg else {})],
            "health": "/health",
        },
    }


@app.get("/api/{feed}/{path:path}")
async def feed_proxy(
    feed: str, path: str, request: Request, svc: ProxyService = Depends(get_proxy)
) -> Response:
    cfg = svc.provider(settings.default_provider)
    target = router.feed_url(cfg, feed, path, request.url.query)
    if target is None:
        return _not_found(request)
    return await svc.handle(target, ProxyMode.STREAM, request)


# ---------------------------------------------------------------------------
# Cache-backed provider routes
# ---------------------------------------------------------------------------

@app.get("/proxy/{provider}/match.{widget_name}")
async def widget_proxy(
    provider: str, widget_name: str, request: Request, svc: ProxyService = Depends(get_proxy)
) -> Response:
    result = await svc.proxy_widget(provider, f"match.{widget_name}", request)
    return result.to_response()


@app.get("/proxy/{provider}/assets/{asset_path:path}")
async def asset_proxy(
    provider: str, asset_path: str, request: Request, svc: ProxyService = Depends(get_proxy)
) -> Response:
    result = await svc.proxy_asset(provider, f"/assets/{asset_path}", request)
    return result.to_response()


@app.get("/proxy/{provider}/{asset_type}/{asset_path:path}")
async def generic_asset_proxy(
    provider: str,
    asset_type: str,
    asset_path: str,
    request: Request,
    svc: ProxyService = Depends(get_proxy),
) -> Response:
    result = await svc.proxy_asset(provider, f"/{asset_type}/{asset_path}", request)
    return result.to_response()


@app.get("/proxy/{provider}")
async def provider_info(provider: str, svc: ProxyService = Depends(get_proxy)) -> dict:
    cfg = svc.provider(provider)
    return {
        "provider": provider,
        "name": cfg.name,
        "baseUrl": cfg.base_url,
        "widgetTypes": list(cfg.widget_types),
        "cache": cfg.cache.model_dump(),
    }


# ---------------------------------------------------------------------------
# Streaming pass-through routes
# ---------------------------------------------------------------------------

@app.get("/translations/{path:path}")
async def translations(request: Request, svc: ProxyService = Depends(get_proxy)) -> Response:
    cfg = svc.provider(settings.default_provider)
    target = router.provider_url(cfg, request.url.path, request.url.query)
    return await svc.handle(target, ProxyMode.STREAM, request)


@app.get("/assets/{path:path}")
@app.get("/js/{path:path}")
@app.get("/css/{path:path}")
async def direct_asset(request: Request, svc: ProxyService = Depends(get_proxy)) -> Response:
    cfg = svc.provider(settings.default_provider)
    target = router.provider_url(cfg, request.url.path, request.url.query)
    return await svc.handle(target, ProxyMode.STREAM, request)


@app.get("/{widget_id}/licensing")
async def licensing(
    widget_id: str, request: Request, svc: ProxyService = Depends(get_proxy)
) -> Response:
    cfg = svc.provider(settings.default_provider)
    if not router.is_licensing_path(cfg, request.url.path):
        return _not_found(request)
    target = router.provider_url(cfg, request.url.path, request.url.query)
    return await svc.handle(target, ProxyMode.STREAM, request)


if __name__ == "__main__":
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
