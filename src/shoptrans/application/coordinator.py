# src/shoptrans/application/coordinator.py
"""
shoptrans 应用总协调器。

高级门面：把版本追踪、跳过决策、工作队列、会话与自动恢复装配在一起，
并对外暴露面向用户的批量操作。组件实例由 DI 容器或引导程序创建后传入。
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime

import structlog

from shoptrans.core.exceptions import NoResourcesError
from shoptrans.core.types import (
    BatchRecoveryOptions,
    BatchRecoverySummary,
    ChangeEvent,
    ChangeRecord,
    HealthReport,
    ItemResult,
    JobSpec,
    Override,
    ResourceSnapshot,
    ResumeResult,
    ScanReport,
    SessionRecord,
    SessionRecoveryResult,
    SessionReport,
    SubmissionMode,
    SubmissionResult,
    Urgency,
)
from shoptrans.core.utils import validate_lang_codes
from shoptrans.infrastructure.cache import DecisionCache
from shoptrans.infrastructure.uow import UowFactory

from .recovery import RecoveryService
from .sessions import SessionManager
from .skip_engine import SkipDecisionEngine
from .version_tracker import VersionTracker
from .work_queue import WorkQueue

logger = structlog.get_logger(__name__)


class Coordinator:
    """高级门面，接收已初始化的组件实例并完成相互之间的挂接。"""

    def __init__(
        self,
        uow_factory: UowFactory,
        tracker: VersionTracker,
        skip_engine: SkipDecisionEngine,
        queue: WorkQueue,
        sessions: SessionManager,
        recovery: RecoveryService,
        cache: DecisionCache | None = None,
    ):
        self._uow_factory = uow_factory
        self.tracker = tracker
        self.skip_engine = skip_engine
        self.queue = queue
        self.sessions = sessions
        self.recovery = recovery
        self.cache = cache

        queue.add_listener(sessions)
        queue.set_failure_handler(recovery.handle_job_failure)

    # ---- 版本追踪 ----

    async def full_scan(
        self,
        shop_id: str,
        snapshots: Iterable[ResourceSnapshot],
        resource_types: Iterable[str] | None = None,
    ) -> ScanReport:
        return await self.tracker.full_scan(shop_id, snapshots, resource_types)

    async def incremental_scan(
        self, shop_id: str, snapshots: Iterable[ResourceSnapshot], since: datetime
    ) -> ScanReport:
        return await self.tracker.incremental_scan(shop_id, snapshots, since)

    async def apply_event(self, event: ChangeEvent) -> ChangeRecord | None:
        return await self.tracker.apply_event(event)

    # ---- 翻译 ----

    async def translate_resources(
        self,
        shop_id: str,
        resource_ids: Sequence[str],
        languages: Sequence[str],
        *,
        urgency: Urgency = Urgency.INTERACTIVE,
        override: Override | None = None,
        quality_threshold: float | None = None,
        inline_timeout: float | None = None,
    ) -> SubmissionResult:
        """
        对一组资源做一次不挂会话的批量翻译。

        先经跳过决策过滤，需要翻译的条目提交给工作队列；
        被跳过的条目以 `skipped` 状态与原因码出现在结果中。
        """
        langs = validate_lang_codes(languages)
        ids = list(dict.fromkeys(resource_ids))
        if not ids or not langs:
            raise NoResourcesError("没有可翻译的资源或目标语言")

        async with self._uow_factory() as uow:
            resources = await uow.resources.get_many(ids)

        decisions = await self.skip_engine.batch_evaluate(
            ids, langs, quality_threshold=quality_threshold, override=override
        )
        skipped: list[ItemResult] = []
        specs: list[JobSpec] = []
        for rid in ids:
            resource = resources.get(rid)
            # 其他店铺的资源按不存在处理
            if resource is not None and resource.shop_id != shop_id:
                resource = None
            for lang in langs:
                decision = decisions[(rid, lang)]
                if resource is None or decision.should_skip:
                    reason = (
                        decision.reason.value if resource else "RESOURCE_NOT_FOUND"
                    )
                    skipped.append(
                        ItemResult(
                            resource_id=rid,
                            language=lang,
                            status="skipped",
                            reason=reason,
                        )
                    )
                    continue
                options = (
                    {"quality_threshold": quality_threshold}
                    if quality_threshold is not None
                    else {}
                )
                specs.append(
                    JobSpec(
                        resource_id=rid,
                        language=lang,
                        shop_id=shop_id,
                        resource_type=resource.resource_type,
                        urgency=urgency,
                        content_length=resource.content_length,
                        options=options,
                    )
                )

        if specs:
            result = await self.queue.submit(specs, inline_timeout=inline_timeout)
        else:
            result = SubmissionResult(mode=SubmissionMode.INLINE, total=0)
        result.items.extend(skipped)
        result.total += len(skipped)
        logger.info(
            "批量翻译已提交",
            shop_id=shop_id,
            mode=result.mode.value,
            submitted=len(specs),
            skipped=len(skipped),
            success=result.success_count,
            failure=result.failure_count,
        )
        return result

    # ---- 会话 ----

    async def start_session(
        self,
        shop_id: str,
        resource_ids: Sequence[str],
        languages: Sequence[str],
        **kwargs,
    ) -> str:
        return await self.sessions.start(shop_id, resource_ids, languages, **kwargs)

    async def pause_session(self, session_id: str) -> SessionRecord:
        return await self.sessions.pause(session_id)

    async def resume_session(self, session_id: str) -> ResumeResult:
        return await self.sessions.resume(session_id)

    async def cancel_session(self, session_id: str) -> SessionRecord:
        return await self.sessions.cancel(session_id)

    async def session_status(self, session_id: str) -> SessionReport:
        return await self.sessions.get_status(session_id)

    # ---- 恢复与健康 ----

    async def recover_failed(
        self, shop_id: str, options: BatchRecoveryOptions | None = None
    ) -> BatchRecoverySummary:
        return await self.recovery.batch_recover_failed_translations(shop_id, options)

    async def recover_session(self, session_id: str) -> SessionRecoveryResult:
        return await self.recovery.recover_session(session_id)

    async def health_check(self, shop_id: str) -> HealthReport:
        return await self.recovery.perform_system_health_check(shop_id)

    async def clear_cache(self) -> None:
        if self.cache is not None:
            await self.cache.clear()

    async def close(self) -> None:
        """停止工作队列；排队中的任务不会被执行。"""
        await self.queue.stop()
