# src/shoptrans/core/exceptions.py
"""定义了 shoptrans 项目的自定义异常层次结构。"""

from __future__ import annotations


class ShopTransError(Exception):
    """所有 shoptrans 特定异常的基类。"""

    code: str = "SHOPTRANS_ERROR"

    def __init__(self, message: str = "", *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return self.message or self.code


class ConfigurationError(ShopTransError):
    """与配置加载或验证相关的错误。"""

    code = "CONFIGURATION_ERROR"


class DatabaseError(ShopTransError):
    """与数据库操作相关的错误。"""

    code = "DATABASE_ERROR"


class IncompleteContentError(ShopTransError):
    """拉取到的资源内容不完整，拒绝更新指纹。"""

    code = "INCOMPLETE_CONTENT"

    def __init__(self, resource_id: str, missing_fields: list[str]) -> None:
        super().__init__(
            f"资源内容不完整: {resource_id}，缺少字段 {', '.join(missing_fields)}"
        )
        self.resource_id = resource_id
        self.missing_fields = missing_fields


class ResourceNotFoundError(ShopTransError):
    """资源在存储或上游中不存在。该错误是终态，不应重试。"""

    code = "RESOURCE_NOT_FOUND"

    def __init__(self, resource_id: str) -> None:
        super().__init__(f"Resource not found: {resource_id}")
        self.resource_id = resource_id


class SessionNotFoundError(ShopTransError):
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"翻译会话不存在: {session_id}")
        self.session_id = session_id


class InvalidSessionStateError(ShopTransError):
    """会话当前状态不允许该操作。"""

    code = "INVALID_SESSION_STATE"


class NoResourcesError(ShopTransError):
    code = "NO_RESOURCES"


class JobNotFoundError(ShopTransError, KeyError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str) -> None:
        ShopTransError.__init__(self, f"任务不存在: {job_id}")
        self.job_id = job_id


class InvalidSyncTransitionError(ShopTransError):
    """同步状态只能前进，除非是显式重新入队。"""

    code = "INVALID_SYNC_TRANSITION"


class ExecutorError(ShopTransError):
    """翻译执行器返回的错误，携带错误码与是否可重试。"""

    code = "EXECUTOR_ERROR"

    def __init__(
        self, message: str, *, code: str | None = None, retryable: bool = False
    ) -> None:
        super().__init__(message, code=code)
        self.retryable = retryable


class ExecutorNotFoundError(ShopTransError, KeyError):
    """当尝试获取一个未注册的执行器时引发。"""

    code = "EXECUTOR_NOT_FOUND"


class CanonicalizationError(ShopTransError, ValueError):
    """内容无法按 RFC 8785 (JCS) 规范化，通常是出现了非 JSON 值。"""

    code = "CANONICALIZATION_ERROR"
