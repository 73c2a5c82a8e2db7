# src/shoptrans/core/interfaces.py
"""
定义了 shoptrans 中外部协作者与内部扩展点的抽象接口协议 (Protocols)。
应用层依赖于这些协议，而不是具体的实现类。
"""

from __future__ import annotations

from typing import Any, Protocol

from .types import ExecutorResult, JobEvent, JobRecord


class TranslationExecutor(Protocol):
    """外部翻译执行器（LLM 调用等）的接口。"""

    async def translate(
        self,
        content: dict[str, Any],
        target_language: str,
        options: dict[str, Any] | None = None,
    ) -> ExecutorResult:
        """翻译一组字段。失败时应抛出 `ExecutorError`。"""
        ...


class TelemetrySink(Protocol):
    """结构化遥测事件的接收端；事件格式对核心逻辑透明。"""

    def emit(self, event: str, **fields: Any) -> None: ...


class JobHandler(Protocol):
    """工作队列的任务处理器：先执行，再在持锁状态下提交结果。"""

    async def execute(self, job: JobRecord) -> Any:
        """调用外部执行器，不写存储。"""
        ...

    async def commit(self, job: JobRecord, outcome: Any) -> None:
        """把执行结果写入存储。"""
        ...

    async def record_failure(self, job: JobRecord, error: BaseException) -> None:
        """记录一次终态失败。"""
        ...


class JobListener(Protocol):
    """任务到达终态后被依次等待调用的监听者。"""

    async def on_job_finished(self, event: JobEvent) -> None: ...


class FailureHandler(Protocol):
    """任务终态失败后的处理钩子；返回重新入队的任务 ID（如有）。"""

    async def __call__(self, job: JobRecord, error: BaseException) -> str | None: ...
