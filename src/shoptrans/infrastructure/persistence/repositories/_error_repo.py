# src/shoptrans/infrastructure/persistence/repositories/_error_repo.py
"""错误日志与恢复尝试仓库的 SQLAlchemy 实现。"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update

from shoptrans.core.types import (
    Diagnosis,
    ErrorLogRecord,
    ErrorStatus,
    RecoveryAction,
    RecoveryContext,
)
from shoptrans.infrastructure.db._schema import ErrorLogRow, RecoveryAttemptRow

from ._base_repo import BaseRepository


class SqlAlchemyErrorRepository(BaseRepository):
    """错误仓库实现。"""

    async def record_error(
        self, diagnosis: Diagnosis, context: RecoveryContext, at: datetime
    ) -> ErrorLogRecord:
        """按 (fingerprint, scope_key) 聚合错误；重复出现时累加次数并重新打开。"""
        stmt = select(ErrorLogRow).where(
            ErrorLogRow.fingerprint == diagnosis.fingerprint,
            ErrorLogRow.scope_key == context.scope_key,
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            row = ErrorLogRow(
                fingerprint=diagnosis.fingerprint,
                scope_key=context.scope_key,
                kind=diagnosis.kind.value,
                code=diagnosis.code,
                message=diagnosis.message,
                first_seen_at=at,
                last_seen_at=at,
                shop_id=context.shop_id,
                resource_id=context.resource_id,
                language=context.language,
                session_id=context.session_id,
            )
            self._session.add(row)
        else:
            row.occurrence_count += 1
            row.last_seen_at = at
            row.message = diagnosis.message
            row.status = ErrorStatus.OPEN.value
            row.resolved_at = None
            if context.session_id:
                row.session_id = context.session_id
        await self._session.flush()
        return ErrorLogRecord.from_orm_model(row)

    async def count_attempts(
        self, fingerprint: str, shop_id: str | None, since: datetime
    ) -> int:
        """统计窗口内同一错误指纹的恢复次数，跨资源与语言累计，只按店铺隔离。"""
        stmt = (
            select(func.count())
            .select_from(RecoveryAttemptRow)
            .where(
                RecoveryAttemptRow.fingerprint == fingerprint,
                RecoveryAttemptRow.created_at >= since,
            )
        )
        if shop_id is not None:
            stmt = stmt.where(RecoveryAttemptRow.shop_id == shop_id)
        return int((await self._session.execute(stmt)).scalar_one())

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
    ) -> None:
        self._session.add(
            RecoveryAttemptRow(
                fingerprint=diagnosis.fingerprint,
                scope_key=context.scope_key,
                kind=diagnosis.kind.value,
                strategy=strategy.value,
                success=success,
                created_at=at,
                shop_id=context.shop_id,
                resource_id=context.resource_id,
                language=context.language,
                session_id=context.session_id,
                message=message,
                details=details,
            )
        )
        await self._session.flush()

    async def latest_for_subject(
        self, resource_id: str, language: str
    ) -> ErrorLogRecord | None:
        stmt = (
            select(ErrorLogRow)
            .where(
                ErrorLogRow.resource_id == resource_id,
                ErrorLogRow.language == language,
                ErrorLogRow.status == ErrorStatus.OPEN.value,
            )
            .order_by(ErrorLogRow.last_seen_at.desc())
            .limit(1)
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return ErrorLogRecord.from_orm_model(row) if row else None

    async def resolve_for_subject(
        self, resource_id: str, language: str, at: datetime
    ) -> int:
        result = await self._session.execute(
            update(ErrorLogRow)
            .where(
                ErrorLogRow.resource_id == resource_id,
                ErrorLogRow.language == language,
                ErrorLogRow.status == ErrorStatus.OPEN.value,
            )
            .values(status=ErrorStatus.RESOLVED.value, resolved_at=at)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def archive_resolved(
        self, before: datetime, limit: int, shop_id: str | None = None
    ) -> int:
        """归档在 `before` 之前已解决的错误，单次最多 `limit` 条。"""
        stmt = select(ErrorLogRow.id).where(
            ErrorLogRow.status == ErrorStatus.RESOLVED.value,
            ErrorLogRow.resolved_at < before,
        )
        if shop_id is not None:
            stmt = stmt.where(ErrorLogRow.shop_id == shop_id)
        ids = (await self._session.execute(stmt.limit(limit))).scalars().all()
        if not ids:
            return 0
        await self._session.execute(
            update(ErrorLogRow)
            .where(ErrorLogRow.id.in_(ids))
            .values(status=ErrorStatus.ARCHIVED.value)
            .execution_options(synchronize_session=False)
        )
        return len(ids)

    async def count_open_since(self, shop_id: str | None, since: datetime) -> int:
        stmt = select(func.coalesce(func.sum(ErrorLogRow.occurrence_count), 0)).where(
            ErrorLogRow.status == ErrorStatus.OPEN.value,
            ErrorLogRow.last_seen_at >= since,
        )
        if shop_id is not None:
            stmt = stmt.where(ErrorLogRow.shop_id == shop_id)
        return int((await self._session.execute(stmt)).scalar_one())

    async def list_recent(
        self,
        *,
        session_id: str | None = None,
        shop_id: str | None = None,
        limit: int = 10,
    ) -> list[ErrorLogRecord]:
        stmt = select(ErrorLogRow)
        if session_id is not None:
            stmt = stmt.where(ErrorLogRow.session_id == session_id)
        if shop_id is not None:
            stmt = stmt.where(ErrorLogRow.shop_id == shop_id)
        stmt = stmt.order_by(ErrorLogRow.last_seen_at.desc()).limit(limit)
        rows = (await self._session.execute(stmt)).scalars().all()
        return [ErrorLogRecord.from_orm_model(row) for row in rows]
