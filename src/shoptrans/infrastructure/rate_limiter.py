# src/shoptrans/infrastructure/rate_limiter.py
"""本模块提供一个基于令牌桶算法的异步速率限制器。"""

import asyncio
import time


class RateLimiter:
    """一个异步安全的令牌桶（Token Bucket）速率限制器。"""

    def __init__(self, refill_rate: float, capacity: float):
        if refill_rate <= 0 or capacity <= 0:
            raise ValueError("速率和容量必须为正数")
        self.refill_rate = refill_rate
        self.capacity = capacity
        self.tokens = capacity
        self.last_refill_time = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill_time
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
            self.last_refill_time = now

    def try_acquire(self, tokens_needed: float = 1) -> bool:
        """
        非阻塞地尝试取令牌。

        工作队列在单个事件循环内同步调用它来决定某个店铺的任务能否立即派发，
        取不到时返回 False，调用方应改派其他店铺的任务。
        """
        self._refill()
        if self.tokens >= tokens_needed:
            self.tokens -= tokens_needed
            return True
        return False

    async def acquire(self, tokens_needed: int = 1) -> None:
        """异步获取指定数量的令牌，如果令牌不足则等待。"""
        if tokens_needed > self.capacity:
            raise ValueError("请求的令牌数不能超过桶的容量")

        while True:
            async with self._lock:
                self._refill()
                if self.tokens >= tokens_needed:
                    self.tokens -= tokens_needed
                    return
                wait_time = (tokens_needed - self.tokens) / self.refill_rate

            # 在锁外等待
            await asyncio.sleep(wait_time)
