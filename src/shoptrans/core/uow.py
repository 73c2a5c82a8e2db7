# src/shoptrans/core/uow.py
"""
单元工作 (Unit of Work) 与仓库的抽象协议。
应用层只依赖这些协议；SQLAlchemy 实现位于 `shoptrans.infrastructure`。
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol

from .types import (
    Diagnosis,
    ErrorLogRecord,
    ItemUpdate,
    RecoveryAction,
    RecoveryContext,
    ResourceRecord,
    ResourceStatus,
    SessionItemRecord,
    SessionItemState,
    SessionRecord,
    SessionStatus,
    SyncStatus,
    TranslationRecord,
    WorkKey,
)


class IResourceRepository(Protocol):
    async def get(self, resource_id: str) -> ResourceRecord | None: ...

    async def get_many(self, resource_ids: Iterable[str]) -> dict[str, ResourceRecord]: ...

    async def list_by_shop(
        self, shop_id: str, resource_types: Iterable[str] | None = None
    ) -> list[ResourceRecord]: ...

    async def existing_ids(self, resource_ids: Iterable[str]) -> set[str]: ...

    async def upsert(
        self,
        *,
        resource_id: str,
        shop_id: str,
        resource_type: str,
        content: dict[str, Any],
        fingerprint: str,
        scanned_at: datetime,
    ) -> ResourceRecord: ...

    async def touch_scanned(self, resource_ids: Iterable[str], at: datetime) -> None: ...

    async def set_status(self, resource_id: str, status: ResourceStatus) -> None: ...

    async def delete(self, resource_id: str) -> bool: ...


class ITranslationRepository(Protocol):
    async def get(self, resource_id: str, language: str) -> TranslationRecord | None: ...

    async def get_many(
        self, resource_ids: Iterable[str], languages: Iterable[str]
    ) -> dict[WorkKey, TranslationRecord]: ...

    async def upsert(
        self,
        *,
        resource_id: str,
        shop_id: str,
        language: str,
        sync_status: SyncStatus,
        requeue: bool = False,
        **values: Any,
    ) -> TranslationRecord: ...

    async def mark_requeued(self, resource_id: str, language: str) -> bool: ...

    async def list_failed(
        self,
        shop_id: str,
        *,
        attempted_before: datetime,
        max_retries: int,
        resource_type: str | None = None,
        language: str | None = None,
        session_id: str | None = None,
        limit: int = 20,
    ) -> list[TranslationRecord]: ...

    async def attempt_stats(self, shop_id: str | None, since: datetime) -> tuple[int, int]:
        """返回 (尝试总数, 失败数)。"""
        ...


class ISessionRepository(Protocol):
    async def create(self, **values: Any) -> SessionRecord: ...

    async def get(
        self, session_id: str, *, for_update: bool = False
    ) -> SessionRecord | None: ...

    async def update(self, session_id: str, **values: Any) -> SessionRecord: ...

    async def list(
        self,
        *,
        shop_id: str | None = None,
        statuses: Iterable[SessionStatus] | None = None,
        include_archived: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SessionRecord]: ...

    async def list_stalled(
        self, checkpoint_before: datetime, shop_id: str | None = None
    ) -> list[SessionRecord]: ...

    async def replace_items(self, session_id: str, items: Iterable[ItemUpdate]) -> None: ...

    async def apply_item_updates(
        self, session_id: str, items: Iterable[ItemUpdate]
    ) -> None: ...

    async def list_items(
        self, session_id: str, state: SessionItemState | None = None
    ) -> list[SessionItemRecord]: ...

    async def count_items(
        self, session_id: str, state: SessionItemState | None = None
    ) -> int: ...


class IErrorRepository(Protocol):
    async def record_error(
        self, diagnosis: Diagnosis, context: RecoveryContext, at: datetime
    ) -> ErrorLogRecord: ...

    async def count_attempts(
        self, fingerprint: str, shop_id: str | None, since: datetime
    ) -> int: ...

    async def add_attempt(
        self,
        *,
        diagnosis: Diagnosis,
        context: RecoveryContext,
        strategy: RecoveryAction,
        success: bool,
        message: str,
        details: dict[str, Any],
        at: datetime,
    ) -> None: ...

    async def latest_for_subject(
        self, resource_id: str, language: str
    ) -> ErrorLogRecord | None: ...

    async def resolve_for_subject(
        self, resource_id: str, language: str, at: datetime
    ) -> int: ...

    async def archive_resolved(
        self, before: datetime, limit: int, shop_id: str | None = None
    ) -> int: ...

    async def count_open_since(self, shop_id: str | None, since: datetime) -> int: ...

    async def list_recent(
        self,
        *,
        session_id: str | None = None,
        shop_id: str | None = None,
        limit: int = 10,
    ) -> list[ErrorLogRecord]: ...


class IUnitOfWork(Protocol):
    resources: IResourceRepository
    translations: ITranslationRepository
    sessions: ISessionRepository
    errors: IErrorRepository

    async def __aenter__(self) -> "IUnitOfWork": ...

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...

    async def ping(self) -> None:
        """执行一次最轻量的存储往返（健康检查用）。"""
        ...
