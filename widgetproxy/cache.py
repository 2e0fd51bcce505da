# widgetproxy/cache.py
import base64
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable
from urllib.parse import urlencode

from cachetools import TLRUCache
from fastapi.responses import Response

if TYPE_CHECKING:
    import redis.asyncio as aioredis
    from config import ProviderConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProxyResult:
    status: int
    body: str | bytes
    content_type: str
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def body_bytes(self) -> bytes:
        return self.body.encode("utf-8") if isinstance(self.body, str) else self.body

    def to_response(self) -> Response:
        headers = dict(self.headers)
        headers.setdefault("content-type", self.content_type)
        return Response(content=self.body_bytes, status_code=self.status, headers=headers)

    def to_dict(self) -> dict[str, Any]:
        binary = isinstance(self.body, bytes)
        return {
            "status": self.status,
            "binary": binary,
            "body": base64.b64encode(self.body).decode("ascii") if binary else self.body,
            "contentType": self.content_type,
            "headers": self.headers,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProxyResult":
        body = data["body"]
        if data.get("binary"):
            body = base64.b64decode(body)
        return cls(
            status=data["status"],
            body=body,
            content_type=data["contentType"],
            headers=dict(data.get("headers") or {}),
        )


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: ProxyResult
    inserted_at: float
    ttl: int


def canonical_query(params: Iterable[tuple[str, str]]) -> str:
    """Order-independent encoding of query pairs (repeated keys kept)."""
    return urlencode(sorted((str(k), str(v)) for k, v in params))


def make_cache_key(
    kind: str,
    provider: str,
    resource: str,
    params: Iterable[tuple[str, str]] = (),
) -> str:
    digest = hashlib.sha256(canonical_query(params).encode("utf-8")).hexdigest()
    return f"{kind}:{provider}:{resource}:{digest}"


def resolve_ttl(
    provider: "ProviderConfig",
    kind: str,
    path: str,
    default_ttl: int,
) -> int:
    """Pick the TTL for a resource; positive provider-specific values beat the default."""
    ttls = provider.cache
    if kind == "widget":
        ttl = ttls.scripts
    elif path.lower().endswith(".js") and "chunk." in path:
        ttl = ttls.chunks
    else:
        ttl = ttls.assets
    return ttl if ttl and ttl > 0 else default_ttl


class MemoryCacheStore:
    """In-process store: per-entry TTL with LRU eviction at ``max_keys``.

    Expired entries are never returned; they are dropped lazily on access and
    by ``sweep`` (run periodically from the app lifespan).
    """

    def __init__(self, max_keys: int = 1000, timer: Callable[[], float] = time.monotonic) -> None:
        self._timer = timer
        self._data: TLRUCache = TLRUCache(
            maxsize=max_keys,
            ttu=lambda _key, entry, now: now + entry.ttl,
            timer=timer,
        )
        self.hits = 0
        self.misses = 0
        self.sets = 0

    async def get(self, key: str) -> ProxyResult | None:
        entry = self._data.get(key)
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    async def set(self, key: str, value: ProxyResult, ttl: int) -> None:
        if ttl <= 0:
            return
        self._data[key] = CacheEntry(key=key, value=value, inserted_at=self._timer(), ttl=ttl)
        self.sets += 1

    async def flush(self) -> None:
        self._data.clear()
        logger.info("Cache cleared")

    def sweep(self) -> int:
        expired = self._data.expire()
        return len(expired) if expired else 0

    async def stats(self) -> dict[str, Any]:
        return {
            "backend": "memory",
            "keys": len(self._data),
            "maxKeys": int(self._data.maxsize),
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
        }


class RedisCacheStore:
    """Shared store backed by Redis; entries expire through ``SET ... EX``.

    Capacity is governed by the server's maxmemory policy.
    """

    def __init__(self, r: "aioredis.Redis", prefix: str = "widgetproxy:") -> None:
        self.r = r
        self.prefix = prefix
        self.hits = 0
        self.misses = 0
        self.sets = 0

    async def get(self, key: str) -> ProxyResult | None:
        raw = await self.r.get(self.prefix + key)
        if raw is None:
            self.misses += 1
            return None
        self.hits += 1
        return ProxyResult.from_dict(json.loads(raw))

    async def set(self, key: str, value: ProxyResult, ttl: int) -> None:
        if ttl <= 0:
            return
        await self.r.set(self.prefix + key, json.dumps(value.to_dict()), ex=ttl)
        self.sets += 1

    async def _keys(self) -> list[str]:
        return [k async for k in self.r.scan_iter(match=self.prefix + "*")]

    async def flush(self) -> None:
        keys = await self._keys()
        if keys:
            await self.r.delete(*keys)
        logger.info("Cache cleared (%d keys)", len(keys))

    def sweep(self) -> int:
        return 0

    async def stats(self) -> dict[str, Any]:
        return {
            "backend": "redis",
            "keys": len(await self._keys()),
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
        }


CacheStore = MemoryCacheStore | RedisCacheStore
