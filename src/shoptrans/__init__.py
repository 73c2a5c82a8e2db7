# src/shoptrans/__init__.py
"""
shoptrans: 店铺内容多语言翻译编排核心。

包含内容版本追踪、跳过决策、工作队列、会话管理与自动恢复五个组件，
由 `shoptrans.application.coordinator.Coordinator` 统一对外提供。
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
