# src/shoptrans/presentation/cli/commands/recovery.py
"""
自动恢复与健康检查命令。
"""

from __future__ import annotations

from typing import Optional

import typer
from rich.table import Table

from shoptrans.core.types import BatchRecoveryOptions, HealthTier

from .._utils import console, run_with_coordinator

app = typer.Typer(help="失败恢复与系统健康检查。", no_args_is_help=True)

_TIER_STYLE = {
    HealthTier.HEALTHY: "green",
    HealthTier.MOSTLY_HEALTHY: "cyan",
    HealthTier.CONCERNING: "yellow",
    HealthTier.UNHEALTHY: "red",
}


@app.command("batch")
def recovery_batch(
    ctx: typer.Context,
    shop_id: str = typer.Option(..., "--shop", help="店铺 ID。"),
    session_id: Optional[str] = typer.Option(None, "--session", help="只恢复该会话的失败项。"),
    language: Optional[str] = typer.Option(None, "--lang", help="只恢复该语言。"),
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="本批最多条目数。"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="是否等待重新入队的任务执行完毕。"),
) -> None:
    """批量恢复失败的译文。"""
    options = BatchRecoveryOptions(
        session_id=session_id, language=language, max_batch_size=limit
    )

    async def _recover(coordinator):
        summary = await coordinator.recover_failed(shop_id, options)
        if wait:
            await coordinator.queue.join()
        return summary

    summary = run_with_coordinator(ctx, _recover)
    table = Table(title=f"批量恢复 · {shop_id}")
    for column in ("错误类别", "动作", "结果", "说明"):
        table.add_column(column)
    for outcome in summary.results:
        table.add_row(
            outcome.diagnosis.kind.value,
            outcome.action.value,
            "✅" if outcome.success else "❌",
            outcome.message,
        )
    console.print(table)
    console.print(
        f"尝试 {summary.total_attempted} · 成功 [green]{summary.recovered}[/green] · "
        f"失败 [red]{summary.failed}[/red]"
    )


@app.command("session")
def recovery_session(
    ctx: typer.Context, session_id: str = typer.Argument(..., help="会话 ID。")
) -> None:
    """恢复失败或暂停的会话。"""
    result = run_with_coordinator(ctx, lambda c: c.recover_session(session_id))
    style = "green" if result.success else "red"
    message = result.message or ("已恢复" if result.success else "恢复失败")
    console.print(f"[{style}]{message}[/{style}]")
    if not result.success:
        raise typer.Exit(code=1)


@app.command("health")
def recovery_health(
    ctx: typer.Context, shop_id: str = typer.Option(..., "--shop", help="店铺 ID。")
) -> None:
    """执行系统健康检查。"""
    report = run_with_coordinator(ctx, lambda c: c.health_check(shop_id))
    style = _TIER_STYLE[report.tier]
    console.print(f"健康等级: [bold {style}]{report.tier.value}[/bold {style}]")
    table = Table()
    for column in ("检查项", "状态", "说明"):
        table.add_column(column)
    for check in report.checks:
        table.add_row(check.name, "✅" if check.healthy else "❌", check.message)
    console.print(table)
    for recommendation in report.recommendations:
        console.print(f"💡 {recommendation}")
