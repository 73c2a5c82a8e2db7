# src/shoptrans/infrastructure/db/session.py
"""会话工厂与建表工具。"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .base import metadata


def create_async_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """基于引擎创建 AsyncSession 工厂。"""
    return async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


async def create_all(engine: AsyncEngine) -> None:
    """按 ORM 元数据建表（开发与测试用；生产环境走 Alembic 迁移）。"""
    from . import _schema  # noqa: F401  确保所有模型已注册到 metadata

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
