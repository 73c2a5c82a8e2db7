# src/shoptrans/adapters/executors/__init__.py
from .base import BaseTranslationExecutor
from .debug import DebugExecutor
from .factory import EXECUTOR_REGISTRY, create_executor

__all__ = [
    "BaseTranslationExecutor",
    "DebugExecutor",
    "EXECUTOR_REGISTRY",
    "create_executor",
]
