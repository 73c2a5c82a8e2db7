# src/shoptrans/presentation/cli/commands/db.py
"""
数据库管理命令。
"""

from __future__ import annotations

import asyncio

import typer

from shoptrans.di import AppContainer
from shoptrans.infrastructure.db import create_all, dispose_engine

from .._utils import console

app = typer.Typer(help="数据库管理命令。", no_args_is_help=True)


@app.command("init")
def db_init(ctx: typer.Context) -> None:
    """按 ORM 元数据创建全部数据表（已存在的表保持不变）。"""
    container: AppContainer = ctx.obj
    engine = container.db_engine()

    async def _init() -> None:
        try:
            await create_all(engine)
        finally:
            await dispose_engine(engine)

    try:
        asyncio.run(_init())
    except Exception as e:
        console.print(f"[bold red]❌ 初始化数据库失败: {e}[/bold red]")
        raise typer.Exit(code=1) from e
    console.print("[green]✅ 数据库表已就绪。[/green]")
