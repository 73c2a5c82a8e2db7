# src/shoptrans/adapters/executors/debug.py
"""提供一个用于开发和测试的调试翻译执行器。"""

from __future__ import annotations

import asyncio
from typing import Any

from shoptrans.config import DebugExecutorSettings, ExecutorSettings
from shoptrans.core.exceptions import ExecutorError
from shoptrans.core.types import ErrorKind

from .base import BaseTranslationExecutor

_TRANSIENT_CODES = frozenset(kind.value for kind in ErrorKind if kind.is_transient)


class DebugExecutor(BaseTranslationExecutor):
    """一个确定性的调试执行器，支持按模式或按文本注入失败。"""

    VERSION = "1.1.0"

    def __init__(
        self,
        settings: ExecutorSettings | None = None,
        debug: DebugExecutorSettings | None = None,
    ):
        super().__init__(settings)
        self.debug = debug or DebugExecutorSettings()
        self.calls: int = 0

    def _fail(self, message: str) -> ExecutorError:
        code = self.debug.fail_code.upper()
        return ExecutorError(message, code=code, retryable=code in _TRANSIENT_CODES)

    async def _translate_text(
        self, text: str, target_language: str, options: dict[str, Any]
    ) -> str:
        self.calls += 1
        if self.debug.delay:
            await asyncio.sleep(self.debug.delay)

        if self.debug.mode == "FAIL":
            raise self._fail("DebugExecutor is in FAIL mode.")
        if self.debug.fail_on_text and self.debug.fail_on_text in text:
            raise self._fail(f"模拟失败：检测到配置的文本 '{self.debug.fail_on_text}'")

        return f"Translated({text}) to {target_language}"

    def _quality_for(
        self, fields: dict[str, str], options: dict[str, Any]
    ) -> float | None:
        return options.get("quality_score", self.debug.quality_score)
