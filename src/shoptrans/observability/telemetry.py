# src/shoptrans/observability/telemetry.py
"""
结构化遥测事件：`pipeline.start/end` 与 `step.start/success/fail`。

事件携带操作名、耗时（毫秒）与结果；事件的落地格式由 sink 决定，
核心逻辑的正确性不依赖于它。
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog

from shoptrans.core.interfaces import TelemetrySink

logger = structlog.get_logger(__name__)


class StructlogTelemetrySink:
    """默认 sink：把遥测事件写成 structlog 日志。"""

    def __init__(self, logger_name: str = "shoptrans.telemetry") -> None:
        self._logger = structlog.get_logger(logger_name)

    def emit(self, event: str, **fields: Any) -> None:
        if event.endswith(".fail"):
            self._logger.warning(event, **fields)
        else:
            self._logger.debug(event, **fields)


class Telemetry:
    """包装一个 sink，提供 pipeline / step 两级计时上下文。"""

    def __init__(self, sink: TelemetrySink | None = None) -> None:
        self._sink: TelemetrySink = sink or StructlogTelemetrySink()

    def emit(self, event: str, **fields: Any) -> None:
        try:
            self._sink.emit(event, **fields)
        except Exception:
            logger.warning("遥测事件发送失败", telemetry_event=event, exc_info=True)

    @asynccontextmanager
    async def pipeline(self, name: str, **fields: Any) -> AsyncIterator[None]:
        started = time.perf_counter()
        self.emit("pipeline.start", operation=name, **fields)
        outcome = "success"
        try:
            yield
        except BaseException:
            outcome = "failure"
            raise
        finally:
            self.emit(
                "pipeline.end",
                operation=name,
                outcome=outcome,
                duration_ms=_elapsed_ms(started),
                **fields,
            )

    @asynccontextmanager
    async def step(self, name: str, **fields: Any) -> AsyncIterator[None]:
        started = time.perf_counter()
        self.emit("step.start", operation=name, **fields)
        try:
            yield
        except BaseException as e:
            self.emit(
                "step.fail",
                operation=name,
                outcome="failure",
                duration_ms=_elapsed_ms(started),
                error=f"{type(e).__name__}: {e}",
                **fields,
            )
            raise
        self.emit(
            "step.success",
            operation=name,
            outcome="success",
            duration_ms=_elapsed_ms(started),
            **fields,
        )


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
