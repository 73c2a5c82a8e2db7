# src/shoptrans/infrastructure/persistence/repositories/_resource_repo.py
"""资源（内容指纹）仓库的 SQLAlchemy 实现。"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import case, delete, select, update

from shoptrans.core.types import ResourceRecord, ResourceStatus
from shoptrans.core.utils import utcnow
from shoptrans.infrastructure.db._schema import ResourceRow, TranslationRow

from ._base_repo import BaseRepository


class SqlAlchemyResourceRepository(BaseRepository):
    """资源仓库实现。"""

    async def get(self, resource_id: str) -> ResourceRecord | None:
        row = await self._session.get(ResourceRow, resource_id)
        return ResourceRecord.from_orm_model(row) if row else None

    async def get_many(self, resource_ids: Iterable[str]) -> dict[str, ResourceRecord]:
        ids = list(dict.fromkeys(resource_ids))
        if not ids:
            return {}
        stmt = select(ResourceRow).where(ResourceRow.id.in_(ids))
        rows = (await self._session.execute(stmt)).scalars().all()
        return {row.id: ResourceRecord.from_orm_model(row) for row in rows}

    async def list_by_shop(
        self, shop_id: str, resource_types: Iterable[str] | None = None
    ) -> list[ResourceRecord]:
        stmt = select(ResourceRow).where(ResourceRow.shop_id == shop_id)
        if resource_types is not None:
            stmt = stmt.where(ResourceRow.resource_type.in_(list(resource_types)))
        rows = (await self._session.execute(stmt.order_by(ResourceRow.id))).scalars()
        return [ResourceRecord.from_orm_model(row) for row in rows]

    async def existing_ids(self, resource_ids: Iterable[str]) -> set[str]:
        ids = list(dict.fromkeys(resource_ids))
        if not ids:
            return set()
        stmt = select(ResourceRow.id).where(ResourceRow.id.in_(ids))
        return set((await self._session.execute(stmt)).scalars().all())

    async def upsert(
        self,
        *,
        resource_id: str,
        shop_id: str,
        resource_type: str,
        content: dict[str, Any],
        fingerprint: str,
        scanned_at: datetime,
    ) -> ResourceRecord:
        """
        原子地插入或更新资源。

        指纹变化时 `content_version` 加一，并把状态重置为 pending。
        """
        now = utcnow()
        insert = self._get_insert_stmt()
        stmt = insert(ResourceRow).values(
            id=resource_id,
            shop_id=shop_id,
            resource_type=resource_type,
            content_fingerprint=fingerprint,
            content_fields=dict(content),
            content_version=1,
            status=ResourceStatus.PENDING.value,
            last_scanned_at=scanned_at,
            created_at=now,
            updated_at=now,
        )
        changed = ResourceRow.content_fingerprint != stmt.excluded.content_fingerprint
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "content_version": case(
                    (changed, ResourceRow.content_version + 1),
                    else_=ResourceRow.content_version,
                ),
                "status": case(
                    (changed, ResourceStatus.PENDING.value), else_=ResourceRow.status
                ),
                "content_fingerprint": stmt.excluded.content_fingerprint,
                "content_fields": stmt.excluded.content_fields,
                "resource_type": stmt.excluded.resource_type,
                "last_scanned_at": stmt.excluded.last_scanned_at,
                "updated_at": now,
            },
        ).returning(ResourceRow)
        row = (
            await self._session.execute(
                stmt, execution_options={"populate_existing": True}
            )
        ).scalar_one()
        return ResourceRecord.from_orm_model(row)

    async def touch_scanned(self, resource_ids: Iterable[str], at: datetime) -> None:
        ids = list(resource_ids)
        if not ids:
            return
        await self._session.execute(
            update(ResourceRow)
            .where(ResourceRow.id.in_(ids))
            .values(last_scanned_at=at)
            .execution_options(synchronize_session=False)
        )

    async def set_status(self, resource_id: str, status: ResourceStatus) -> None:
        await self._session.execute(
            update(ResourceRow)
            .where(ResourceRow.id == resource_id)
            .values(status=status.value)
            .execution_options(synchronize_session=False)
        )

    async def delete(self, resource_id: str) -> bool:
        """删除资源及其全部译文。"""
        await self._session.execute(
            delete(TranslationRow).where(TranslationRow.resource_id == resource_id)
        )
        result = await self._session.execute(
            delete(ResourceRow).where(ResourceRow.id == resource_id)
        )
        return bool(result.rowcount)
