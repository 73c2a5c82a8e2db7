# src/shoptrans/presentation/cli/_utils.py
"""
CLI 内部共享的辅助工具：协调器生命周期、异步命令执行与结果渲染。
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

import typer
from rich.console import Console
from rich.table import Table

from shoptrans.application.coordinator import Coordinator
from shoptrans.bootstrap import shutdown_container
from shoptrans.core.exceptions import ShopTransError
from shoptrans.core.types import SubmissionResult
from shoptrans.core.utils import describe_reason
from shoptrans.di import AppContainer

T = TypeVar("T")

console = Console()


@asynccontextmanager
async def get_coordinator(
    container: AppContainer,
) -> AsyncGenerator[Coordinator, None]:
    """
    安全地获取并关闭 Coordinator。
    这是 CLI 中所有与应用层交互的命令的推荐模式。
    """
    coordinator = container.coordinator()
    try:
        yield coordinator
    finally:
        await shutdown_container(container)


def run_with_coordinator(
    ctx: typer.Context, action: Callable[[Coordinator], Awaitable[T]]
) -> T:
    """在一次事件循环中执行命令；领域错误转为友好的退出信息。"""
    container: AppContainer = ctx.obj

    async def _main() -> T:
        async with get_coordinator(container) as coordinator:
            return await action(coordinator)

    try:
        return asyncio.run(_main())
    except (ShopTransError, ValueError) as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        raise typer.Exit(code=1) from e


def render_submission(result: SubmissionResult, locale: str) -> None:
    table = Table(title=f"翻译结果（{result.mode.value}）")
    table.add_column("资源", style="cyan")
    table.add_column("语言")
    table.add_column("状态")
    table.add_column("原因")
    for item in result.items:
        reason = describe_reason(item.reason, locale) if item.reason else ""
        table.add_row(item.resource_id, item.language, item.status, reason)
    console.print(table)
    console.print(
        f"成功 [green]{result.success_count}[/green]  "
        f"失败 [red]{result.failure_count}[/red]  "
        f"跳过 [yellow]{result.skipped_count}[/yellow]  "
        f"排队 [blue]{result.queued_count}[/blue]"
    )
    if result.estimated_seconds is not None:
        console.print(f"[dim]预计耗时 {result.estimated_seconds} 秒[/dim]")
