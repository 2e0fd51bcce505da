# widgetproxy/test_cache.py
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from cache import (
    MemoryCacheStore,
    ProxyResult,
    RedisCacheStore,
    canonical_query,
    make_cache_key,
    resolve_ttl,
)
from config import CacheTtls, ProviderConfig

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _result(body="ok", status=200):
    return ProxyResult(
        status=status,
        body=body,
        content_type="application/javascript",
        headers={"content-type": "application/javascript"},
    )


def _provider(**cache):
    return ProviderConfig(name="Acme", base_url="https://x.test", cache=CacheTtls(**cache))


def _redis():
    """Return a mock async Redis client."""
    r = MagicMock()
    r.get = AsyncMock(return_value=None)
    r.set = AsyncMock(return_value=True)
    r.delete = AsyncMock(return_value=1)

    async def scan_iter(match=None):
        for key in ["widgetproxy:a", "widgetproxy:b"]:
            yield key

    r.scan_iter = scan_iter
    return r


# ---------------------------------------------------------------------------
# Cache keys
# ---------------------------------------------------------------------------

class TestCacheKey:
    def test_deterministic(self):
        a = make_cache_key("widget", "acme", "match.lmtPlus", [("matchId", "1")])
        b = make_cache_key("widget", "acme", "match.lmtPlus", [("matchId", "1")])
        assert a == b

    def test_query_order_irrelevant(self):
        a = make_cache_key("widget", "acme", "w", [("a", "1"), ("b", "2")])
        b = make_cache_key("widget", "acme", "w", [("b", "2"), ("a", "1")])
        assert a == b

    def test_differs_by_query_value(self):
        a = make_cache_key("widget", "acme", "w", [("matchId", "1")])
        b = make_cache_key("widget", "acme", "w", [("matchId", "2")])
        assert a != b

    @pytest.mark.parametrize("other", [
        ("asset", "acme", "w"),
        ("widget", "other", "w"),
        ("widget", "acme", "w2"),
    ])
    def test_differs_by_identity(self, other):
        assert make_cache_key("widget", "acme", "w") != make_cache_key(*other)

    def test_key_carries_identity_prefix(self):
        assert make_cache_key("asset", "acme", "/js/a.js").startswith("asset:acme:/js/a.js:")

    def test_canonical_query_keeps_repeated_keys(self):
        assert canonical_query([("a", "2"), ("a", "1")]) == "a=1&a=2"


# ---------------------------------------------------------------------------
# TTL resolution
# ---------------------------------------------------------------------------

class TestResolveTtl:
    def test_widget_uses_scripts(self):
        assert resolve_ttl(_provider(scripts=120), "widget", "match.lmtPlus", 300) == 120

    def test_chunk_js_uses_chunks(self):
        assert resolve_ttl(_provider(chunks=900), "asset", "/assets/js/chunk.123.js", 300) == 900

    def test_plain_js_uses_assets(self):
        assert resolve_ttl(_provider(assets=7200), "asset", "/assets/js/main.js", 300) == 7200

    def test_css_uses_assets(self):
        assert resolve_ttl(_provider(assets=7200), "asset", "/css/theme.css", 300) == 7200

    def test_chunk_css_is_not_a_chunk(self):
        assert resolve_ttl(_provider(assets=7200, chunks=10), "asset", "/css/chunk.1.css", 300) == 7200

    def test_missing_provider_value_falls_back_to_default(self):
        assert resolve_ttl(_provider(scripts=None), "widget", "match.lmtPlus", 42) == 42

    @pytest.mark.parametrize("ttl", [0, -5])
    def test_non_positive_provider_value_falls_back_to_default(self, ttl):
        assert resolve_ttl(_provider(scripts=ttl), "widget", "match.lmtPlus", 42) == 42


# ---------------------------------------------------------------------------
# ProxyResult serialization
# ---------------------------------------------------------------------------

class TestProxyResult:
    def test_text_round_trip(self):
        r = _result("héllo")
        assert ProxyResult.from_dict(json.loads(json.dumps(r.to_dict()))) == r

    def test_binary_round_trip(self):
        r = ProxyResult(status=200, body=b"\x89PNG\x00", content_type="image/png", headers={})
        data = json.loads(json.dumps(r.to_dict()))
        assert data["binary"] is True
        assert ProxyResult.from_dict(data) == r

    def test_to_response(self):
        resp = _result("abc").to_response()
        assert resp.status_code == 200
        assert resp.body == b"abc"
        assert resp.headers["content-type"] == "application/javascript"


# ---------------------------------------------------------------------------
# MemoryCacheStore
# ---------------------------------------------------------------------------

class TestMemoryCacheStore:
    async def test_miss_then_hit(self):
        store = MemoryCacheStore()
        assert await store.get("k") is None
        await store.set("k", _result(), 60)
        assert await store.get("k") == _result()
        stats = await store.stats()
        assert (stats["hits"], stats["misses"], stats["sets"], stats["keys"]) == (1, 1, 1, 1)

    async def test_entry_not_returned_after_ttl(self):
        clock = FakeClock()
        store = MemoryCacheStore(timer=clock)
        await store.set("k", _result(), 60)
        clock.now += 59
        assert await store.get("k") is not None
        clock.now += 2
        assert await store.get("k") is None

    async def test_per_entry_ttl(self):
        clock = FakeClock()
        store = MemoryCacheStore(timer=clock)
        await store.set("short", _result(), 10)
        await store.set("long", _result(), 100)
        clock.now += 50
        assert await store.get("short") is None
        assert await store.get("long") is not None

    async def test_replacement_is_whole_entry(self):
        store = MemoryCacheStore()
        await store.set("k", _result("one"), 60)
        await store.set("k", _result("two"), 60)
        assert (await store.get("k")).body == "two"
        assert (await store.stats())["keys"] == 1

    async def test_capacity_evicts_least_recently_used(self):
        store = MemoryCacheStore(max_keys=2)
        await store.set("a", _result("a"), 60)
        await store.set("b", _result("b"), 60)
        await store.get("a")
        await store.set("c", _result("c"), 60)
        assert await store.get("b") is None
        assert await store.get("a") is not None
        assert await store.get("c") is not None

    async def test_zero_ttl_not_stored(self):
        store = MemoryCacheStore()
        await store.set("k", _result(), 0)
        assert await store.get("k") is None

    async def test_sweep_removes_expired(self):
        clock = FakeClock()
        store = MemoryCacheStore(timer=clock)
        await store.set("a", _result(), 10)
        await store.set("b", _result(), 100)
        clock.now += 20
        assert store.sweep() == 1
        assert (await store.stats())["keys"] == 1

    async def test_flush(self):
        store = MemoryCacheStore()
        await store.set("a", _result(), 60)
        await store.flush()
        assert await store.get("a") is None
        assert (await store.stats())["keys"] == 0


# ---------------------------------------------------------------------------
# RedisCacheStore
# ---------------------------------------------------------------------------

class TestRedisCacheStore:
    async def test_set_uses_prefix_and_expiry(self):
        r = _redis()
        store = RedisCacheStore(r, prefix="widgetproxy:")
        await store.set("k", _result(), 60)
        key, payload = r.set.call_args[0]
        assert key == "widgetproxy:k"
        assert r.set.call_args[1]["ex"] == 60
        assert json.loads(payload)["body"] == "ok"

    async def test_get_miss(self):
        store = RedisCacheStore(_redis())
        assert await store.get("k") is None
        assert store.misses == 1

    async def test_get_hit_deserializes(self):
        r = _redis()
        r.get = AsyncMock(return_value=json.dumps(_result().to_dict()))
        store = RedisCacheStore(r)
        assert await store.get("k") == _result()
        r.get.assert_awaited_once_with("widgetproxy:k")
        assert store.hits == 1

    async def test_zero_ttl_not_stored(self):
        r = _redis()
        await RedisCacheStore(r).set("k", _result(), 0)
        r.set.assert_not_awaited()

    async def test_flush_deletes_prefixed_keys(self):
        r = _redis()
        await RedisCacheStore(r).flush()
        r.delete.assert_awaited_once_with("widgetproxy:a", "widgetproxy:b")

    async def test_stats_counts_keys(self):
        stats = await RedisCacheStore(_redis()).stats()
        assert stats["backend"] == "redis"
        assert stats["keys"] == 2
