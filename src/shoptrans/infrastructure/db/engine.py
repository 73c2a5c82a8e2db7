# src/shoptrans/infrastructure/db/engine.py
"""
异步引擎工厂

- SQLite：NullPool；每个连接开启外键约束，事务以 `BEGIN IMMEDIATE` 开始，
  避免多个协程并发写时出现读锁升级死锁；
- 其他方言：映射连接池参数。
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from shoptrans.config import DatabaseSettings, ShopTransConfig

SQLITE_BUSY_TIMEOUT = 30.0


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite+aiosqlite") or url.startswith("sqlite://")


def _on_sqlite_connect(dbapi_connection: Any, _connection_record: Any) -> None:
    # 由我们自己发出 BEGIN，驱动不再隐式开启事务
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _on_sqlite_begin(conn: Connection) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_async_db_engine(cfg: ShopTransConfig | DatabaseSettings) -> AsyncEngine:
    """根据配置创建 AsyncEngine。"""
    db = cfg.database if isinstance(cfg, ShopTransConfig) else cfg
    is_sqlite = _is_sqlite(db.url)

    kwargs: dict[str, Any] = {"echo": db.echo, "pool_pre_ping": db.pool_pre_ping}
    if is_sqlite:
        kwargs["poolclass"] = NullPool
        kwargs["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT}
    else:
        if db.pool_size is not None:
            kwargs["pool_size"] = db.pool_size
        if db.max_overflow is not None:
            kwargs["max_overflow"] = db.max_overflow
        kwargs["pool_timeout"] = db.pool_timeout

    engine = create_async_engine(db.url, **kwargs)
    if is_sqlite:
        event.listen(engine.sync_engine, "connect", _on_sqlite_connect)
        event.listen(engine.sync_engine, "begin", _on_sqlite_begin)
    return engine
