# src/shoptrans/adapters/executors/base.py
"""
本模块定义了所有翻译执行器必须继承的抽象基类（ABC）。
基类负责速率限制、并发控制与分段字段的拼接，子类只需实现单段文本的翻译。
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import structlog

from shoptrans.config import ExecutorSettings
from shoptrans.core.exceptions import ExecutorError
from shoptrans.core.types import ExecutorResult
from shoptrans.infrastructure.rate_limiter import RateLimiter

logger = structlog.get_logger(__name__)


class BaseTranslationExecutor(ABC):
    """翻译执行器的纯异步抽象基类，内置速率限制和并发控制。"""

    VERSION: str = "1.0.0"

    def __init__(self, settings: ExecutorSettings | None = None):
        self.settings = settings or ExecutorSettings()
        self._rate_limiter: RateLimiter | None = None
        if self.settings.rate_limit_per_second:
            self._rate_limiter = RateLimiter(
                refill_rate=self.settings.rate_limit_per_second,
                capacity=self.settings.rate_limit_capacity,
            )
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrency)

    @property
    def name(self) -> str:
        """从类名自动推断执行器的名称。"""
        return self.__class__.__name__.replace("Executor", "").lower()

    @abstractmethod
    async def _translate_text(
        self, text: str, target_language: str, options: dict[str, Any]
    ) -> str:
        """[子类实现] 翻译单段文本；失败时抛出 ExecutorError。"""
        ...

    def _quality_for(
        self, fields: dict[str, str], options: dict[str, Any]
    ) -> float | None:
        """[子类可选] 返回本次结果的质量分；默认未知。"""
        return None

    async def _translate_one(
        self, text: str, target_language: str, options: dict[str, Any]
    ) -> str:
        """[模板方法] 执行单段翻译，应用并发和速率限制。"""
        if self._rate_limiter:
            await self._rate_limiter.acquire()
        async with self._semaphore:
            return await self._translate_text(text, target_language, options)

    async def translate(
        self,
        content: dict[str, Any],
        target_language: str,
        options: dict[str, Any] | None = None,
    ) -> ExecutorResult:
        """
        翻译一组字段。

        `options["segments"]` 形如 `{字段名: [片段, ...]}`，存在时逐段翻译后按原顺序拼接；
        非字符串字段原样忽略。
        """
        options = dict(options or {})
        segments: dict[str, list[str]] = options.get("segments") or {}
        names = [name for name, value in content.items() if isinstance(value, str)]
        if not names:
            return ExecutorResult(skipped=True, reason="EMPTY_CONTENT")

        async def _field(name: str) -> str:
            parts = segments.get(name)
            if not parts:
                return await self._translate_one(content[name], target_language, options)
            translated = await asyncio.gather(
                *(self._translate_one(part, target_language, options) for part in parts)
            )
            return "".join(translated)

        results = await asyncio.gather(
            *(_field(name) for name in names), return_exceptions=True
        )
        fields: dict[str, str] = {}
        for name, res in zip(names, results):
            if isinstance(res, ExecutorError):
                raise res
            if isinstance(res, BaseException):
                logger.warning(
                    "执行器内部异常", executor=self.name, field=name, exc_info=res
                )
                raise ExecutorError(
                    f"执行器异常: {res.__class__.__name__}: {res}", retryable=False
                ) from res
            fields[name] = res
        return ExecutorResult(
            fields=fields, quality_score=self._quality_for(fields, options)
        )
