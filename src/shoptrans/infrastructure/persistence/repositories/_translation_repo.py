# src/shoptrans/infrastructure/persistence/repositories/_translation_repo.py
"""译文仓库的 SQLAlchemy 实现。"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import case, func, or_, select, update

from shoptrans.core.exceptions import InvalidSyncTransitionError
from shoptrans.core.types import SyncStatus, TranslationRecord, WorkKey
from shoptrans.core.utils import utcnow
from shoptrans.infrastructure.db._schema import ResourceRow, TranslationRow

from ._base_repo import BaseRepository, plain


class SqlAlchemyTranslationRepository(BaseRepository):
    """译文仓库实现。"""

    async def get(self, resource_id: str, language: str) -> TranslationRecord | None:
        row = await self._get_row(resource_id, language)
        return TranslationRecord.from_orm_model(row) if row else None

    async def _get_row(self, resource_id: str, language: str) -> TranslationRow | None:
        stmt = select(TranslationRow).where(
            TranslationRow.resource_id == resource_id,
            TranslationRow.language == language,
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def get_many(
        self, resource_ids: Iterable[str], languages: Iterable[str]
    ) -> dict[WorkKey, TranslationRecord]:
        ids, langs = list(resource_ids), list(languages)
        if not ids or not langs:
            return {}
        stmt = select(TranslationRow).where(
            TranslationRow.resource_id.in_(ids), TranslationRow.language.in_(langs)
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return {
            (row.resource_id, row.language): TranslationRecord.from_orm_model(row)
            for row in rows
        }

    async def upsert(
        self,
        *,
        resource_id: str,
        shop_id: str,
        language: str,
        sync_status: SyncStatus,
        requeue: bool = False,
        **values: Any,
    ) -> TranslationRecord:
        """
        按 (resource_id, language) 原子地插入或更新一条译文。

        冲突更新只在当前状态允许迁移到 `sync_status` 时生效；
        非重新入队的写入若会让状态回退，则抛出 InvalidSyncTransitionError。
        """
        fields = {name: plain(value) for name, value in values.items()}
        now = utcnow()
        insert = self._get_insert_stmt()
        stmt = insert(TranslationRow).values(
            id=str(uuid.uuid4()),
            resource_id=resource_id,
            shop_id=shop_id,
            language=language,
            sync_status=sync_status.value,
            created_at=now,
            updated_at=now,
            **fields,
        )
        allowed = [
            s.value for s in SyncStatus if s.can_transition_to(sync_status, requeue=requeue)
        ]
        update_cols = ["sync_status", *fields]
        stmt = stmt.on_conflict_do_update(
            index_elements=["resource_id", "language"],
            set_={
                **{col: getattr(stmt.excluded, col) for col in update_cols},
                "updated_at": now,
            },
            where=TranslationRow.sync_status.in_(allowed),
        ).returning(TranslationRow)
        row = (
            await self._session.execute(
                stmt, execution_options={"populate_existing": True}
            )
        ).scalar_one_or_none()
        if row is None:
            current = await self._get_row(resource_id, language)
            current_status = current.sync_status if current else "?"
            raise InvalidSyncTransitionError(
                f"同步状态不能从 {current_status} 回退到 {sync_status.value}"
                f"（{resource_id}/{language}）"
            )
        return TranslationRecord.from_orm_model(row)

    async def mark_requeued(self, resource_id: str, language: str) -> bool:
        """把已有译文标回 pending，表示该键被重新领取；没有行或已是 pending 时返回 False。"""
        result = await self._session.execute(
            update(TranslationRow)
            .where(
                TranslationRow.resource_id == resource_id,
                TranslationRow.language == language,
                TranslationRow.sync_status != SyncStatus.PENDING.value,
            )
            .values(sync_status=SyncStatus.PENDING.value)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

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
    ) -> list[TranslationRecord]:
        stmt = select(TranslationRow).where(
            TranslationRow.shop_id == shop_id,
            TranslationRow.sync_status == SyncStatus.FAILED.value,
            TranslationRow.retry_count < max_retries,
            or_(
                TranslationRow.last_attempt_at.is_(None),
                TranslationRow.last_attempt_at <= attempted_before,
            ),
        )
        if resource_type is not None:
            stmt = stmt.join(
                ResourceRow, ResourceRow.id == TranslationRow.resource_id
            ).where(ResourceRow.resource_type == resource_type)
        if language is not None:
            stmt = stmt.where(TranslationRow.language == language)
        if session_id is not None:
            stmt = stmt.where(TranslationRow.session_id == session_id)
        stmt = stmt.order_by(TranslationRow.last_attempt_at, TranslationRow.id).limit(
            limit
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [TranslationRecord.from_orm_model(row) for row in rows]

    async def attempt_stats(self, shop_id: str | None, since: datetime) -> tuple[int, int]:
        failed = case(
            (TranslationRow.sync_status == SyncStatus.FAILED.value, 1), else_=0
        )
        stmt = select(
            func.count(TranslationRow.id), func.coalesce(func.sum(failed), 0)
        ).where(TranslationRow.last_attempt_at >= since)
        if shop_id is not None:
            stmt = stmt.where(TranslationRow.shop_id == shop_id)
        total, failures = (await self._session.execute(stmt)).one()
        return int(total), int(failures)
