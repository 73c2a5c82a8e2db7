# src/shoptrans/presentation/cli/commands/session.py
"""
翻译会话管理命令。
"""

from __future__ import annotations

from typing import Optional

import typer
from rich.table import Table

from shoptrans.core.types import Override, SessionRecord, SessionStatus

from .._utils import console, run_with_coordinator

app = typer.Typer(help="管理可恢复的批量翻译会话。", no_args_is_help=True)


def _print_session(session: SessionRecord) -> None:
    console.print(
        f"[cyan]{session.id}[/cyan] {session.name} · "
        f"[bold]{session.status.value}[/bold]"
        + (f" ({session.status_reason})" if session.status_reason else "")
    )


@app.command("start")
def session_start(
    ctx: typer.Context,
    shop_id: str = typer.Option(..., "--shop", help="店铺 ID。"),
    resource_ids: list[str] = typer.Option(..., "--resource", "-r", help="资源 ID，可重复。"),
    languages: list[str] = typer.Option(..., "--lang", "-l", help="目标语言，可重复。"),
    name: Optional[str] = typer.Option(None, "--name", help="会话名称。"),
    force: bool = typer.Option(False, "--force", help="忽略跳过决策，强制翻译。"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="是否等待任务执行完毕。"),
) -> None:
    """创建并启动一个翻译会话。"""

    async def _start(coordinator):
        session_id = await coordinator.start_session(
            shop_id,
            resource_ids,
            languages,
            name=name,
            override=Override.USER_REQUESTED if force else None,
        )
        if wait:
            await coordinator.queue.join()
        return await coordinator.session_status(session_id)

    report = run_with_coordinator(ctx, _start)
    _print_session(report.session)
    console.print(f"进度 {report.progress_percent}% · 待处理 {report.pending_items}")


@app.command("list")
def session_list(
    ctx: typer.Context,
    shop_id: Optional[str] = typer.Option(None, "--shop", help="按店铺过滤。"),
    status: Optional[SessionStatus] = typer.Option(None, "--status", help="按状态过滤。"),
    include_archived: bool = typer.Option(False, "--archived", help="包含已归档会话。"),
    limit: int = typer.Option(20, "--limit", min=1),
) -> None:
    """列出翻译会话。"""
    sessions = run_with_coordinator(
        ctx,
        lambda c: c.sessions.list_sessions(
            shop_id,
            statuses=[status] if status else None,
            include_archived=include_archived,
            limit=limit,
        ),
    )
    if not sessions:
        console.print("[yellow]没有找到会话。[/yellow]")
        return
    table = Table(title="翻译会话")
    for column in ("ID", "名称", "店铺", "状态", "完成", "跳过", "出错", "总数"):
        table.add_column(column)
    for s in sessions:
        table.add_row(
            s.id,
            s.name,
            s.shop_id,
            s.status.value,
            str(s.completed_count),
            str(s.skipped_count),
            str(s.errored_count),
            str(s.total_items),
        )
    console.print(table)


@app.command("status")
def session_status(
    ctx: typer.Context, session_id: str = typer.Argument(..., help="会话 ID。")
) -> None:
    """查看会话进度与最近错误。"""
    report = run_with_coordinator(ctx, lambda c: c.session_status(session_id))
    _print_session(report.session)
    console.print(
        f"进度 {report.progress_percent}% · 待处理 {report.pending_items} · "
        f"错误率 {report.session.error_rate:.1%}"
    )
    for error in report.recent_errors:
        console.print(
            f"[red]✗[/red] {error.resource_id}/{error.language} "
            f"{error.code} ×{error.occurrence_count}: {error.message}"
        )


@app.command("pause")
def session_pause(
    ctx: typer.Context, session_id: str = typer.Argument(..., help="会话 ID。")
) -> None:
    """暂停运行中的会话。"""
    _print_session(run_with_coordinator(ctx, lambda c: c.pause_session(session_id)))


@app.command("resume")
def session_resume(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="会话 ID。"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="是否等待任务执行完毕。"),
) -> None:
    """恢复已暂停的会话；已完成的条目不会重新翻译。"""

    async def _resume(coordinator):
        result = await coordinator.resume_session(session_id)
        if result.success and wait:
            await coordinator.queue.join()
        return result

    result = run_with_coordinator(ctx, _resume)
    if not result.success:
        console.print(f"[bold red]❌ 无法恢复会话: {result.message}[/bold red]")
        for issue in result.issues:
            console.print(f"  - {issue}")
        raise typer.Exit(code=1)
    console.print(
        f"[green]✅ 会话已恢复[/green]：重新入队 {result.enqueued}，"
        f"已完成 {result.already_done}"
    )


@app.command("cancel")
def session_cancel(
    ctx: typer.Context, session_id: str = typer.Argument(..., help="会话 ID。")
) -> None:
    """取消会话并停止派发其任务。"""
    _print_session(run_with_coordinator(ctx, lambda c: c.cancel_session(session_id)))


@app.command("archive")
def session_archive(
    ctx: typer.Context, session_id: str = typer.Argument(..., help="会话 ID。")
) -> None:
    """归档已结束或已暂停的会话。"""
    _print_session(run_with_coordinator(ctx, lambda c: c.sessions.archive(session_id)))
