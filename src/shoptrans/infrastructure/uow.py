# src/shoptrans/infrastructure/uow.py
"""
SQLAlchemy 单元工作 (Unit of Work) 的具体实现。
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from shoptrans.core.exceptions import DatabaseError
from shoptrans.core.uow import IUnitOfWork

from .persistence.repositories import (
    SqlAlchemyErrorRepository,
    SqlAlchemyResourceRepository,
    SqlAlchemySessionRepository,
    SqlAlchemyTranslationRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


class SqlAlchemyUnitOfWork(IUnitOfWork):
    """SQLAlchemy UoW 实现。正常退出时提交，异常时回滚。"""

    def __init__(self, sessionmaker: "async_sessionmaker[AsyncSession]"):
        self._sessionmaker = sessionmaker
        self.session: "AsyncSession"

    async def __aenter__(self) -> "SqlAlchemyUnitOfWork":
        self.session = self._sessionmaker()
        self.resources = SqlAlchemyResourceRepository(self.session)
        self.translations = SqlAlchemyTranslationRepository(self.session)
        self.sessions = SqlAlchemySessionRepository(self.session)
        self.errors = SqlAlchemyErrorRepository(self.session)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            if exc_type is not None:
                await self.rollback()
            else:
                await self.commit()
        finally:
            await self.session.close()
        if isinstance(exc_val, SQLAlchemyError):
            raise DatabaseError(f"存储操作失败: {exc_val}") from exc_val

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise DatabaseError(f"提交事务失败: {e}") from e

    async def rollback(self) -> None:
        await self.session.rollback()

    async def ping(self) -> None:
        await self.session.execute(text("SELECT 1"))


# 类型别名，用于依赖注入
UowFactory = Callable[[], IUnitOfWork]
