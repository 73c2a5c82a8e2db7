# src/shoptrans/presentation/cli/__init__.py
from .main import app

__all__ = ["app"]
