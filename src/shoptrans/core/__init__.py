# src/shoptrans/core/__init__.py
"""核心契约：异常、类型、协议与 UoW 抽象。"""

from .exceptions import (
    CanonicalizationError,
    ConfigurationError,
    DatabaseError,
    ExecutorError,
    ExecutorNotFoundError,
    IncompleteContentError,
    InvalidSessionStateError,
    InvalidSyncTransitionError,
    JobNotFoundError,
    NoResourcesError,
    ResourceNotFoundError,
    SessionNotFoundError,
    ShopTransError,
)

__all__ = [
    "ShopTransError",
    "ConfigurationError",
    "DatabaseError",
    "ExecutorError",
    "ExecutorNotFoundError",
    "IncompleteContentError",
    "InvalidSessionStateError",
    "InvalidSyncTransitionError",
    "JobNotFoundError",
    "NoResourcesError",
    "ResourceNotFoundError",
    "SessionNotFoundError",
    "CanonicalizationError",
]
