# tests/unit/test_cache.py
"""
针对 `shoptrans.infrastructure.cache` 的单元测试。

验证决策缓存的存取、按资源失效、清空与 TTL 过期。
"""

import pytest
from cachetools import LRUCache, TTLCache

from shoptrans.config import CacheSettings
from shoptrans.core.types import SkipAction, SkipDecision, SkipReason
from shoptrans.infrastructure.cache import DecisionCache


def _decision(resource_id: str, language: str = "de") -> SkipDecision:
    return SkipDecision(
        resource_id=resource_id,
        language=language,
        action=SkipAction.SKIP,
        reason=SkipReason.UP_TO_DATE,
        confidence=1.0,
    )


def test_make_key_contains_every_decision_input() -> None:
    key = DecisionCache.make_key("p-1", "de", "abc", 0.7, None)
    assert key == "p-1|de|abc|0.7000|-"
    assert DecisionCache.make_key("p-1", "de", "abc", 0.7, "USER_REQUESTED") != key
    assert DecisionCache.make_key("p-1", "de", "abd", 0.7, None) != key
    assert DecisionCache.make_key("p-1", "de", "abc", 0.8, None) != key


def test_cache_type_follows_settings() -> None:
    assert isinstance(DecisionCache().cache, TTLCache)
    assert isinstance(DecisionCache(CacheSettings(cache_type="LRU")).cache, LRUCache)


@pytest.mark.asyncio
async def test_set_and_get() -> None:
    cache = DecisionCache()
    key = DecisionCache.make_key("p-1", "de", "abc", 0.7, None)
    assert await cache.get(key) is None
    await cache.set(key, _decision("p-1"))
    cached = await cache.get(key)
    assert cached is not None
    assert cached.reason is SkipReason.UP_TO_DATE


@pytest.mark.asyncio
async def test_invalidate_resource_only_touches_that_resource() -> None:
    cache = DecisionCache()
    await cache.set(DecisionCache.make_key("p-1", "de", "a", 0.7, None), _decision("p-1"))
    await cache.set(
        DecisionCache.make_key("p-1", "fr", "a", 0.7, None), _decision("p-1", "fr")
    )
    await cache.set(DecisionCache.make_key("p-10", "de", "b", 0.7, None), _decision("p-10"))

    assert await cache.invalidate_resource("p-1") == 2
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_clear() -> None:
    cache = DecisionCache()
    await cache.set("k", _decision("p-1"))
    await cache.clear()
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_ttl_expiration() -> None:
    """TTL 缓存在指定时间后自动使条目失效（确定性测试）。"""
    current_time = 1000.0

    def timer() -> float:
        return current_time

    config = CacheSettings(maxsize=10, ttl=1, cache_type="TTL")
    cache = DecisionCache(config)
    cache.cache = TTLCache(maxsize=config.maxsize, ttl=config.ttl, timer=timer)

    await cache.set("k", _decision("p-1"))
    assert await cache.get("k") is not None

    current_time += 2
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_write_back_after_invalidation_is_dropped() -> None:
    cache = DecisionCache()
    key = DecisionCache.make_key("p-1", "de", "a", 0.7, None)
    generation = cache.generation("p-1")
    other = cache.generation("p-2")

    # 读取存储期间该资源被写入并失效
    await cache.invalidate_resource("p-1")
    assert await cache.set(key, _decision("p-1"), generation=generation) is False
    assert await cache.get(key) is None

    assert cache.generation("p-2") == other
    fresh = cache.generation("p-1")
    assert await cache.set(key, _decision("p-1"), generation=fresh) is True
    assert await cache.get(key) is not None


@pytest.mark.asyncio
async def test_clear_advances_every_generation() -> None:
    cache = DecisionCache()
    await cache.invalidate_resource("p-1")
    before = {rid: cache.generation(rid) for rid in ("p-1", "p-2")}

    await cache.clear()
    key = DecisionCache.make_key("p-2", "de", "b", 0.7, None)
    assert await cache.set(key, _decision("p-2"), generation=before["p-2"]) is False
    assert all(cache.generation(rid) > gen for rid, gen in before.items())
