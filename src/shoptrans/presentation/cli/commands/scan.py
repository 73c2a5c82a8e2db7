# src/shoptrans/presentation/cli/commands/scan.py
"""
内容扫描命令：从 JSON 快照文件导入资源并检测变更。
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from pydantic import TypeAdapter
from rich.table import Table

from shoptrans.core.types import ResourceSnapshot, ScanReport

from .._utils import console, run_with_coordinator

app = typer.Typer(help="扫描店铺内容并追踪版本。", no_args_is_help=True)

_SNAPSHOTS = TypeAdapter(list[ResourceSnapshot])


def _load_snapshots(path: Path) -> list[ResourceSnapshot]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[bold red]❌ 无法读取快照文件 {path}: {e}[/bold red]")
        raise typer.Exit(code=1) from e
    return _SNAPSHOTS.validate_python(raw)


def _render(report: ScanReport) -> None:
    table = Table(title=f"扫描结果 · {report.shop_id}")
    table.add_column("类别")
    table.add_column("数量", justify="right")
    table.add_row("新增", str(len(report.new)))
    table.add_row("修改", str(len(report.modified)))
    table.add_row("删除", str(len(report.deleted)))
    table.add_row("未变化", str(report.unchanged))
    table.add_row("内容不完整", str(len(report.incomplete)))
    console.print(table)
    for resource_id, fields in report.incomplete.items():
        console.print(f"[yellow]⚠ {resource_id} 缺少字段: {', '.join(fields)}[/yellow]")


@app.command("full")
def scan_full(
    ctx: typer.Context,
    shop_id: str = typer.Option(..., "--shop", help="店铺 ID。"),
    snapshot_file: Path = typer.Option(
        ..., "--file", exists=True, dir_okay=False, help="资源快照 JSON 文件（数组）。"
    ),
    resource_types: Optional[list[str]] = typer.Option(
        None, "--type", help="只扫描指定资源类型，可重复。"
    ),
) -> None:
    """全量扫描：快照中不存在的已存资源视为删除。"""
    snapshots = _load_snapshots(snapshot_file)
    report = run_with_coordinator(
        ctx, lambda c: c.full_scan(shop_id, snapshots, resource_types or None)
    )
    _render(report)
