# src/shoptrans/workers/__init__.py
from ._orchestration_worker import OrchestrationWorker

__all__ = ["OrchestrationWorker"]
