# src/shoptrans/presentation/cli/commands/worker.py
import asyncio

import structlog
import typer

from shoptrans.di import AppContainer
from shoptrans.infrastructure.db import dispose_engine

from .._utils import console

logger = structlog.get_logger(__name__)

app = typer.Typer(help="运行后台 Worker 进程。", no_args_is_help=True)


@app.command("run")
def run_worker(ctx: typer.Context) -> None:
    """
    启动编排 Worker：运行工作队列，周期性检测停滞会话并批量恢复失败项。
    """
    container: AppContainer = ctx.obj
    shutdown_event = asyncio.Event()

    async def _run() -> None:
        worker = container.orchestration_worker()
        try:
            await worker.run_loop(shutdown_event)
        finally:
            await dispose_engine(container.db_engine())

    try:
        console.print("[cyan]🚀 正在启动编排 Worker...[/cyan]")
        asyncio.run(_run())
    except KeyboardInterrupt:
        logger.warning("收到键盘中断信号，正在关闭...")
        shutdown_event.set()
    except Exception as e:
        logger.error("Worker 进程意外终止。", error=e, exc_info=True)
        raise typer.Exit(1) from e

    console.print("[bold green]✅ Worker 已关闭。[/bold green]")
