# src/shoptrans/infrastructure/persistence/repositories/_session_repo.py
"""翻译会话与会话工作项仓库的 SQLAlchemy 实现。"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select

from shoptrans.core.exceptions import SessionNotFoundError
from shoptrans.core.types import (
    ItemUpdate,
    SessionItemRecord,
    SessionItemState,
    SessionRecord,
    SessionStatus,
)
from shoptrans.infrastructure.db._schema import SessionItemRow, TranslationSessionRow

from ._base_repo import BaseRepository, plain


class SqlAlchemySessionRepository(BaseRepository):
    """会话仓库实现。"""

    async def create(self, **values: Any) -> SessionRecord:
        row = TranslationSessionRow(**{k: plain(v) for k, v in values.items()})
        self._session.add(row)
        await self._session.flush()
        return SessionRecord.from_orm_model(row)

    async def _get_row(
        self, session_id: str, *, for_update: bool = False
    ) -> TranslationSessionRow | None:
        stmt = select(TranslationSessionRow).where(
            TranslationSessionRow.id == session_id
        )
        if for_update:
            stmt = stmt.with_for_update()
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def get(
        self, session_id: str, *, for_update: bool = False
    ) -> SessionRecord | None:
        row = await self._get_row(session_id, for_update=for_update)
        return SessionRecord.from_orm_model(row) if row else None

    async def update(self, session_id: str, **values: Any) -> SessionRecord:
        row = await self._get_row(session_id)
        if row is None:
            raise SessionNotFoundError(session_id)
        for name, value in values.items():
            setattr(row, name, plain(value))
        await self._session.flush()
        return SessionRecord.from_orm_model(row)

    async def list(
        self,
        *,
        shop_id: str | None = None,
        statuses: Iterable[SessionStatus] | None = None,
        include_archived: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SessionRecord]:
        stmt = select(TranslationSessionRow)
        if shop_id is not None:
            stmt = stmt.where(TranslationSessionRow.shop_id == shop_id)
        if statuses is not None:
            stmt = stmt.where(
                TranslationSessionRow.status.in_([s.value for s in statuses])
            )
        if not include_archived:
            stmt = stmt.where(TranslationSessionRow.archived.is_(False))
        stmt = (
            stmt.order_by(TranslationSessionRow.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [SessionRecord.from_orm_model(row) for row in rows]

    async def list_stalled(
        self, checkpoint_before: datetime, shop_id: str | None = None
    ) -> list[SessionRecord]:
        stmt = select(TranslationSessionRow).where(
            TranslationSessionRow.status == SessionStatus.RUNNING.value,
            TranslationSessionRow.last_checkpoint_at < checkpoint_before,
        )
        if shop_id is not None:
            stmt = stmt.where(TranslationSessionRow.shop_id == shop_id)
        rows = (await self._session.execute(stmt)).scalars().all()
        return [SessionRecord.from_orm_model(row) for row in rows]

    # ---- 会话工作项 ----

    async def replace_items(self, session_id: str, items: Iterable[ItemUpdate]) -> None:
        """用一组新的工作项整体替换会话的工作项（恢复会话时重建划分）。"""
        await self._session.execute(
            delete(SessionItemRow).where(SessionItemRow.session_id == session_id)
        )
        self._session.add_all(
            SessionItemRow(
                session_id=session_id,
                resource_id=item.resource_id,
                language=item.language,
                state=item.state.value,
                reason=item.reason,
            )
            for item in items
        )
        await self._session.flush()

    async def apply_item_updates(
        self, session_id: str, items: Iterable[ItemUpdate]
    ) -> None:
        for item in items:
            row = await self._session.get(
                SessionItemRow, (session_id, item.resource_id, item.language)
            )
            if row is None:
                continue
            row.state = item.state.value
            row.reason = item.reason
        await self._session.flush()

    async def list_items(
        self, session_id: str, state: SessionItemState | None = None
    ) -> list[SessionItemRecord]:
        stmt = select(SessionItemRow).where(SessionItemRow.session_id == session_id)
        if state is not None:
            stmt = stmt.where(SessionItemRow.state == state.value)
        rows = (await self._session.execute(stmt)).scalars().all()
        return [SessionItemRecord.from_orm_model(row) for row in rows]

    async def count_items(
        self, session_id: str, state: SessionItemState | None = None
    ) -> int:
        stmt = select(func.count()).select_from(SessionItemRow).where(
            SessionItemRow.session_id == session_id
        )
        if state is not None:
            stmt = stmt.where(SessionItemRow.state == state.value)
        return int((await self._session.execute(stmt)).scalar_one())
