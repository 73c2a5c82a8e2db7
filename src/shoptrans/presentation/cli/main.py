# src/shoptrans/presentation/cli/main.py
import os
from typing import Literal

import typer
from rich.console import Console

from shoptrans.bootstrap import create_app_config, create_container

from .commands import db, recovery, scan, session, translate, worker

app = typer.Typer(
    name="shoptrans",
    help="🛍️ shoptrans 店铺内容翻译编排命令行工具。",
    add_completion=False,
    no_args_is_help=True,
)

# 注册所有子命令
app.add_typer(db.app, name="db")
app.add_typer(scan.app, name="scan")
app.add_typer(session.app, name="session")
app.add_typer(recovery.app, name="recovery")
app.add_typer(worker.app, name="worker")
app.command("translate")(translate.translate)

console = Console()


@app.callback()
def main(ctx: typer.Context):
    """
    主回调函数，负责创建 DI 容器并附加到上下文。
    """
    try:
        env_mode_str = os.getenv("SHOPTRANS_ENV", "dev").lower()
        if env_mode_str not in ("prod", "dev", "test"):
            env_mode_str = "dev"
        env_mode: Literal["prod", "dev", "test"] = env_mode_str  # type: ignore

        config = create_app_config(env_mode=env_mode)
        ctx.obj = create_container(config, service_name="shoptrans-cli")
    except Exception as e:
        console.print(
            f"[bold red]❌ 启动失败：无法加载配置或初始化容器: {e}[/bold red]"
        )
        raise typer.Exit(code=1) from e


if __name__ == "__main__":
    app()
