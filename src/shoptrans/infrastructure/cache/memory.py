# src/shoptrans/infrastructure/cache/memory.py
"""跳过决策的进程内缓存（cachetools），用于减少重复的存储读取。"""

from __future__ import annotations

import asyncio
from typing import Union

from cachetools import LRUCache, TTLCache

from shoptrans.config import CacheSettings
from shoptrans.core.types import SkipDecision


class DecisionCache:
    """
    一个异步安全的跳过决策缓存。

    缓存键包含内容指纹、质量阈值与覆盖标记；内容变化后指纹不同，旧条目自然失效。
    写入译文后仍需调用 `invalidate_resource` 清除该资源的条目。

    每次失效都会推进该资源的代数。读取存储前先取 `generation`，写回时带上它；
    期间发生过失效的写回会被丢弃。
    """

    def __init__(self, config: CacheSettings | None = None):
        self.config = config or CacheSettings()
        self.cache: Union[LRUCache[str, SkipDecision], TTLCache[str, SkipDecision]]
        self._lock_pool_size = self.config.lock_pool_size
        self._key_locks: list[asyncio.Lock] = [
            asyncio.Lock() for _ in range(self._lock_pool_size)
        ]
        self._global_lock = asyncio.Lock()
        self._generation_seq = 0
        self._generations: dict[str, int] = {}
        self._cleared_at = 0
        self._initialize_cache()

    def _initialize_cache(self) -> None:
        if self.config.cache_type == "TTL":
            self.cache = TTLCache(maxsize=self.config.maxsize, ttl=self.config.ttl)
        else:
            self.cache = LRUCache(maxsize=self.config.maxsize)

    @staticmethod
    def make_key(
        resource_id: str,
        language: str,
        fingerprint: str | None,
        threshold: float,
        override: str | None,
    ) -> str:
        return "|".join(
            [
                resource_id,
                language,
                fingerprint or "-",
                f"{threshold:.4f}",
                override or "-",
            ]
        )

    def _lock_for(self, key: str) -> asyncio.Lock:
        return self._key_locks[hash(key) % self._lock_pool_size]

    async def get(self, key: str) -> SkipDecision | None:
        async with self._lock_for(key):
            return self.cache.get(key)

    def generation(self, resource_id: str) -> int:
        return max(self._generations.get(resource_id, 0), self._cleared_at)

    async def set(
        self, key: str, decision: SkipDecision, *, generation: int | None = None
    ) -> bool:
        """写入一条决策；`generation` 已过期时不写入并返回 False。"""
        async with self._lock_for(key):
            if generation is not None and generation != self.generation(
                decision.resource_id
            ):
                return False
            self.cache[key] = decision
            return True

    async def invalidate_resource(self, resource_id: str) -> int:
        """清除某个资源的全部缓存条目，返回清除数量。"""
        prefix = f"{resource_id}|"
        async with self._global_lock:
            self._generation_seq += 1
            self._generations[resource_id] = self._generation_seq
            stale = [k for k in list(self.cache.keys()) if k.startswith(prefix)]
            for key in stale:
                self.cache.pop(key, None)
        return len(stale)

    async def clear(self) -> None:
        async with self._global_lock:
            self._generation_seq += 1
            self._cleared_at = self._generation_seq
            self._generations.clear()
            self._initialize_cache()

    def __len__(self) -> int:
        return len(self.cache)
