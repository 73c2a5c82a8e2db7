# src/shoptrans/adapters/executors/factory.py
"""根据配置创建翻译执行器实例。"""

from __future__ import annotations

import structlog

from shoptrans.config import ShopTransConfig
from shoptrans.core.exceptions import ExecutorNotFoundError

from .base import BaseTranslationExecutor
from .debug import DebugExecutor

logger = structlog.get_logger(__name__)

EXECUTOR_REGISTRY: dict[str, type[BaseTranslationExecutor]] = {
    "debug": DebugExecutor,
}


def create_executor(config: ShopTransConfig) -> BaseTranslationExecutor:
    kind = config.executor.kind
    executor_cls = EXECUTOR_REGISTRY.get(kind)
    if executor_cls is None:
        raise ExecutorNotFoundError(
            f"未注册的执行器: {kind}（可用: {', '.join(sorted(EXECUTOR_REGISTRY))}）"
        )
    if executor_cls is DebugExecutor:
        executor: BaseTranslationExecutor = DebugExecutor(
            config.executor, config.debug_executor
        )
    else:
        executor = executor_cls(config.executor)
    logger.info("翻译执行器已创建", executor=executor.name, version=executor.VERSION)
    return executor
