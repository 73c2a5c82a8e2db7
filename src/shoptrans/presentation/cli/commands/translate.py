# src/shoptrans/presentation/cli/commands/translate.py
from __future__ import annotations

from typing import Optional

import typer

from shoptrans.core.types import JobState, Override, Urgency
from shoptrans.di import AppContainer

from .._utils import render_submission, run_with_coordinator


def translate(
    ctx: typer.Context,
    shop_id: str = typer.Option(..., "--shop", help="店铺 ID。"),
    resource_ids: list[str] = typer.Option(..., "--resource", "-r", help="资源 ID，可重复。"),
    languages: list[str] = typer.Option(..., "--lang", "-l", help="目标语言，可重复。"),
    force: bool = typer.Option(False, "--force", help="忽略跳过决策，强制翻译。"),
    threshold: Optional[float] = typer.Option(
        None, "--threshold", min=0.0, max=1.0, help="质量阈值。"
    ),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="同步等待的秒数。"),
) -> None:
    """翻译指定资源；少量条目同步返回逐项结果。"""
    container: AppContainer = ctx.obj
    locale = container.config().default_locale

    async def _translate(coordinator):
        result = await coordinator.translate_resources(
            shop_id,
            resource_ids,
            languages,
            urgency=Urgency.INTERACTIVE,
            override=Override.USER_REQUESTED if force else None,
            quality_threshold=threshold,
            inline_timeout=timeout,
        )
        if result.queued_count:
            # 异步模式下进程退出前把已排队的任务跑完
            await coordinator.queue.join()
            for item in result.items:
                if item.status == "queued" and item.job_id:
                    state = coordinator.queue.get_status(item.job_id)
                    if state is JobState.COMPLETED:
                        item.status = "success"
                    elif state.is_terminal:
                        item.status = "failure"
        return result

    result = run_with_coordinator(ctx, _translate)
    render_submission(result, locale)
    if result.failure_count:
        raise typer.Exit(code=2)
