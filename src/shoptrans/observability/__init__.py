# src/shoptrans/observability/__init__.py
from .logging_config import setup_logging, setup_logging_from_config
from .telemetry import StructlogTelemetrySink, Telemetry

__all__ = [
    "setup_logging",
    "setup_logging_from_config",
    "StructlogTelemetrySink",
    "Telemetry",
]
