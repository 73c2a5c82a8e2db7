# alembic/env.py
# Alembic 迁移环境的配置文件。
# 负责连接数据库、加载模型元数据并执行迁移。

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine

from shoptrans.config import ShopTransConfig
from shoptrans.infrastructure.db._schema import Base

# 从 alembic.ini 加载日志配置。
config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# `target_metadata` 指向全部 ORM 模型的元数据，供 autogenerate 比较。
target_metadata = Base.metadata

# 数据库 URL 来自 ShopTransConfig（SHOPTRANS_DATABASE__URL），而不是硬编码。
config.set_main_option("sqlalchemy.url", ShopTransConfig().database.url)


def run_migrations_offline() -> None:
    """在“离线”模式下运行迁移：只生成 SQL 脚本，不连接数据库。"""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=url.startswith("sqlite"),
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection) -> None:
    """迁移执行的核心逻辑。"""
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=connection.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    """在“在线”模式下运行迁移：通过异步引擎连接数据库并直接应用。"""
    connectable = create_async_engine(
        config.get_main_option("sqlalchemy.url"),
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        # run_sync 桥接异步连接与同步的 Alembic 上下文
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
