# src/shoptrans/infrastructure/db/base.py
"""
SQLAlchemy 的元数据 (MetaData) 与声明式基类。

所有 ORM 模型通过 `Base` 与模块级的单一 `metadata` 实例关联，
`db init` 与 Alembic 迁移都以它为准。
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, MetaData
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, MappedAsDataclass
from sqlalchemy.types import TypeDecorator

metadata = MetaData(
    naming_convention={
        "ix": "ix_%(column_0_label)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
        "pk": "pk_%(table_name)s",
    }
)


class Base(MappedAsDataclass, DeclarativeBase):
    """项目统一的声明式基类（数据类风格）。"""

    __abstract__ = True
    metadata = metadata


class UTCDateTime(TypeDecorator[datetime]):
    """
    总是以 UTC 存取的时间列。

    SQLite 不保存时区信息，读回的是 naive datetime；这里统一补上 UTC，
    保证应用层拿到的都是带时区的时间。
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(
        self, value: datetime | None, dialect: Dialect
    ) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None) if dialect.name == "sqlite" else value

    def process_result_value(
        self, value: datetime | None, dialect: Dialect
    ) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
