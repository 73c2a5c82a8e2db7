# src/shoptrans/infrastructure/cache/__init__.py
from .memory import DecisionCache

__all__ = ["DecisionCache"]
