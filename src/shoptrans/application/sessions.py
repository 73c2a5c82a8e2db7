# src/shoptrans/application/sessions.py
"""
翻译会话管理器。

会话是一次可恢复的批量翻译运行：
RUNNING → PAUSED → RUNNING → COMPLETED | FAILED。

工作项的已完成/待处理划分总是由跳过决策引擎根据存储状态重新推导，
恢复时不信任持久化的计数器。
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import structlog

from shoptrans.config import ShopTransConfig
from shoptrans.core.exceptions import (
    InvalidSessionStateError,
    NoResourcesError,
    SessionNotFoundError,
)
from shoptrans.core.types import (
    ItemUpdate,
    JobEvent,
    JobEventKind,
    JobSpec,
    Override,
    ProgressDelta,
    ResumeResult,
    SessionItemState,
    SessionPartition,
    SessionRecord,
    SessionReport,
    SessionStatus,
    SkipAction,
    SkipReason,
    Urgency,
    WorkKey,
)
from shoptrans.core.utils import utcnow, validate_lang_codes
from shoptrans.infrastructure.uow import UowFactory
from shoptrans.observability.telemetry import Telemetry

from .skip_engine import SkipDecisionEngine
from .work_queue import WorkQueue

logger = structlog.get_logger(__name__)


def _append_trace(
    traces: list[dict[str, Any]],
    step: str,
    message: str,
    data: dict[str, Any] | None,
    limit: int,
) -> list[dict[str, Any]]:
    entry = {
        "step": step,
        "message": message,
        "data": data or {},
        "at": utcnow().isoformat(),
    }
    return (list(traces) + [entry])[-limit:]


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SessionManager:
    def __init__(
        self,
        uow_factory: UowFactory,
        config: ShopTransConfig,
        skip_engine: SkipDecisionEngine,
        queue: WorkQueue,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._settings = config.session
        self._skip_engine = skip_engine
        self._queue = queue
        self._telemetry = telemetry or Telemetry()

    # ---- 创建 ----

    async def start(
        self,
        shop_id: str,
        resource_ids: Iterable[str],
        languages: Iterable[str],
        *,
        name: str | None = None,
        session_type: str = "BATCH",
        quality_threshold: float | None = None,
        urgency: Urgency = Urgency.BACKGROUND,
        override: Override | None = None,
    ) -> str:
        """创建会话并把需要翻译的工作项入队，返回会话 ID。"""
        langs = validate_lang_codes(languages)
        ids = list(dict.fromkeys(resource_ids))
        if not ids or not langs:
            raise NoResourcesError("会话至少需要一个资源和一种目标语言")

        async with self._uow_factory() as uow:
            if not await uow.resources.existing_ids(ids):
                raise NoResourcesError(f"店铺 {shop_id} 中找不到任何指定的资源")
            now = utcnow()
            session = await uow.sessions.create(
                shop_id=shop_id,
                name=name or f"{session_type.lower()}-{now:%Y%m%d%H%M%S}",
                session_type=session_type,
                status=SessionStatus.RUNNING,
                languages=langs,
                resource_ids=ids,
                quality_threshold=quality_threshold,
                total_items=len(ids) * len(langs),
                started_at=now,
                last_checkpoint_at=now,
                traces=_append_trace(
                    [],
                    "start",
                    "会话已创建",
                    {"resources": len(ids), "languages": langs},
                    self._settings.max_traces,
                ),
            )

        async with self._telemetry.pipeline("session.start", session_id=session.id):
            partition = await self.compute_partition(session, override=override)
            items = [
                ItemUpdate(
                    resource_id=rid,
                    language=lang,
                    state=SessionItemState.SKIPPED,
                    reason=reason.value,
                )
                for (rid, lang), reason in partition.done.items()
            ] + [
                ItemUpdate(
                    resource_id=rid,
                    language=lang,
                    state=SessionItemState.PENDING,
                    reason=reason.value,
                )
                for (rid, lang), reason in partition.pending.items()
            ]
            async with self._uow_factory() as uow:
                await uow.sessions.replace_items(session.id, items)
                values: dict[str, Any] = {"skipped_count": len(partition.done)}
                if not partition.pending:
                    values.update(
                        status=SessionStatus.COMPLETED,
                        completed_at=utcnow(),
                        status_reason="NOTHING_TO_TRANSLATE",
                    )
                await uow.sessions.update(session.id, **values)

            enqueued = await self._enqueue(session, partition.pending, urgency)

        logger.info(
            "翻译会话已启动",
            session_id=session.id,
            shop_id=shop_id,
            total=session.total_items,
            skipped=len(partition.done),
            enqueued=enqueued,
        )
        return session.id

    async def compute_partition(
        self, session: SessionRecord | str, *, override: Override | None = None
    ) -> SessionPartition:
        """
        根据当前存储状态推导会话的已完成/待处理划分。

        对同一份输入快照，结果与之前是否崩溃无关。
        """
        if isinstance(session, str):
            session = await self._require(session)
        async with self._uow_factory() as uow:
            existing = await uow.resources.existing_ids(session.resource_ids)

        decisions = await self._skip_engine.batch_evaluate(
            [rid for rid in session.resource_ids if rid in existing],
            session.languages,
            quality_threshold=session.quality_threshold,
            override=override,
            session_id=session.id,
        )
        done: dict[WorkKey, SkipReason] = {}
        pending: dict[WorkKey, SkipReason] = {}
        for key, decision in decisions.items():
            if decision.action is SkipAction.SKIP:
                done[key] = decision.reason
            else:
                pending[key] = decision.reason
        missing = frozenset(rid for rid in session.resource_ids if rid not in existing)
        for rid in missing:
            for lang in session.languages:
                done[(rid, lang)] = SkipReason.RESOURCE_NOT_FOUND
        return SessionPartition(done=done, pending=pending, missing_resources=missing)

    async def _enqueue(
        self,
        session: SessionRecord,
        keys: Iterable[WorkKey],
        urgency: Urgency = Urgency.BACKGROUND,
    ) -> int:
        keys = list(keys)
        if not keys:
            return 0
        async with self._uow_factory() as uow:
            resources = await uow.resources.get_many({rid for rid, _ in keys})
        options: dict[str, Any] = {}
        if session.quality_threshold is not None:
            options["quality_threshold"] = session.quality_threshold
        specs = [
            JobSpec(
                resource_id=rid,
                language=lang,
                shop_id=session.shop_id,
                resource_type=resources[rid].resource_type,
                urgency=urgency,
                content_length=resources[rid].content_length,
                session_ids=[session.id],
                options=dict(options),
            )
            for rid, lang in keys
            if rid in resources
        ]
        self._queue.enqueue_batch(specs)
        return len(specs)

    # ---- 检查点 ----

    async def checkpoint(
        self, session_id: str, delta: ProgressDelta | dict[str, Any]
    ) -> SessionRecord:
        """
        事务性地写入一次进度增量。

        计数只增不减且不超过总数；没有待处理工作项时进入 COMPLETED，
        处理量达到下限且错误率超过上限时进入 FAILED。
        """
        if not isinstance(delta, ProgressDelta):
            delta = ProgressDelta.model_validate(delta)
        now = utcnow()
        async with self._uow_factory() as uow:
            session = await uow.sessions.get(session_id, for_update=True)
            if session is None:
                raise SessionNotFoundError(session_id)
            if delta.items:
                await uow.sessions.apply_item_updates(session_id, delta.items)
            if session.status.is_terminal:
                return session

            total = session.total_items
            completed = min(total, session.completed_count + delta.completed)
            skipped = min(total, session.skipped_count + delta.skipped)
            errored = min(total, session.errored_count + delta.errored)
            processed = completed + skipped + errored
            error_rate = round(errored / processed, 4) if processed else 0.0
            values: dict[str, Any] = {
                "completed_count": completed,
                "skipped_count": skipped,
                "errored_count": errored,
                "error_rate": error_rate,
                "last_checkpoint_at": now,
            }

            if session.status is SessionStatus.RUNNING:
                pending = await uow.sessions.count_items(
                    session_id, SessionItemState.PENDING
                )
                if (
                    processed >= self._settings.min_items_for_failure
                    and error_rate > self._settings.failure_error_rate
                ):
                    values.update(
                        status=SessionStatus.FAILED,
                        status_reason="ERROR_RATE_EXCEEDED",
                        completed_at=now,
                        traces=_append_trace(
                            session.traces,
                            "failed",
                            "错误率超过上限",
                            {"error_rate": error_rate, "processed": processed},
                            self._settings.max_traces,
                        ),
                    )
                elif pending == 0:
                    values.update(
                        status=SessionStatus.COMPLETED,
                        completed_at=now,
                        traces=_append_trace(
                            session.traces,
                            "completed",
                            "全部工作项已终结",
                            {"completed": completed, "skipped": skipped, "errored": errored},
                            self._settings.max_traces,
                        ),
                    )
            updated = await uow.sessions.update(session_id, **values)

        if updated.status is not session.status:
            logger.info(
                "会话状态变更",
                session_id=session_id,
                status=updated.status.value,
                reason=updated.status_reason,
            )
        return updated

    async def on_job_finished(self, event: JobEvent) -> None:
        """把工作队列的终态事件转成对应会话的检查点。"""
        spec = event.spec
        if event.kind is JobEventKind.CANCELLED or not spec.session_ids:
            return
        if event.kind is JobEventKind.COMPLETED:
            delta = ProgressDelta(
                completed=1,
                items=[
                    ItemUpdate(
                        resource_id=spec.resource_id,
                        language=spec.language,
                        state=SessionItemState.COMPLETED,
                    )
                ],
            )
        elif event.kind is JobEventKind.FAILED:
            delta = ProgressDelta(
                errored=1,
                items=[
                    ItemUpdate(
                        resource_id=spec.resource_id,
                        language=spec.language,
                        state=SessionItemState.FAILED,
                        reason=event.error_code,
                    )
                ],
            )
        else:
            # 已由恢复服务重新入队：工作项保持 pending，只记下最近的错误码，不计入错误数
            delta = ProgressDelta(
                items=[
                    ItemUpdate(
                        resource_id=spec.resource_id,
                        language=spec.language,
                        state=SessionItemState.PENDING,
                        reason=event.error_code,
                    )
                ]
            )

        for session_id in spec.session_ids:
            try:
                await self.checkpoint(session_id, delta)
            except SessionNotFoundError:
                logger.warning("任务引用的会话不存在", session_id=session_id)

    # ---- 状态迁移 ----

    async def _require(self, session_id: str) -> SessionRecord:
        async with self._uow_factory() as uow:
            session = await uow.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def pause(self, session_id: str, reason: str = "USER_REQUEST") -> SessionRecord:
        """暂停会话并取消只属于它的排队任务；已派发的任务自然结束。"""
        now = utcnow()
        async with self._uow_factory() as uow:
            session = await uow.sessions.get(session_id, for_update=True)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.status is not SessionStatus.RUNNING:
                raise InvalidSessionStateError(
                    f"只有 RUNNING 的会话可以暂停（当前 {session.status.value}）"
                )
            updated = await uow.sessions.update(
                session_id,
                status=SessionStatus.PAUSED,
                status_reason=reason,
                paused_at=now,
                traces=_append_trace(
                    session.traces,
                    "pause",
                    "会话已暂停",
                    {"reason": reason},
                    self._settings.max_traces,
                ),
            )
        cancelled = await self._queue.cancel_session(session_id)
        logger.info(
            "会话已暂停", session_id=session_id, reason=reason, cancelled_jobs=cancelled
        )
        return updated

    async def resume(self, session_id: str) -> ResumeResult:
        """
        恢复一个 PAUSED 会话。

        校验会话年龄、错误率与资源是否仍存在；任一不满足时拒绝并返回原因，
        不改变会话状态。通过后用跳过决策引擎重新推导划分，只把待处理项入队。
        """
        session = await self._require(session_id)
        issues = await self._resume_issues(session)
        if issues:
            logger.warning("拒绝恢复会话", session_id=session_id, issues=issues)
            return ResumeResult(
                success=False,
                session_id=session_id,
                status=session.status,
                issues=issues,
                message="会话无法恢复",
            )

        async with self._telemetry.pipeline("session.resume", session_id=session_id):
            partition = await self.compute_partition(session)
            async with self._uow_factory() as uow:
                current = await uow.sessions.get(session_id, for_update=True)
                if current is None:
                    raise SessionNotFoundError(session_id)
                if current.status is not SessionStatus.PAUSED:
                    return ResumeResult(
                        success=False,
                        session_id=session_id,
                        status=current.status,
                        issues=[f"会话状态已变为 {current.status.value}"],
                        message="会话无法恢复",
                    )
                previous = {
                    (item.resource_id, item.language): item.state
                    for item in await uow.sessions.list_items(session_id)
                }
                items = [
                    ItemUpdate(
                        resource_id=rid,
                        language=lang,
                        state=(
                            SessionItemState.COMPLETED
                            if previous.get((rid, lang)) is SessionItemState.COMPLETED
                            else SessionItemState.SKIPPED
                        ),
                        reason=reason.value,
                    )
                    for (rid, lang), reason in partition.done.items()
                ] + [
                    ItemUpdate(
                        resource_id=rid,
                        language=lang,
                        state=SessionItemState.PENDING,
                        reason=reason.value,
                    )
                    for (rid, lang), reason in partition.pending.items()
                ]
                await uow.sessions.replace_items(session_id, items)
                now = utcnow()
                values: dict[str, Any] = {
                    "status": SessionStatus.RUNNING,
                    "status_reason": None,
                    "paused_at": None,
                    "last_checkpoint_at": now,
                    "traces": _append_trace(
                        current.traces,
                        "resume",
                        "会话已恢复",
                        {
                            "pending": len(partition.pending),
                            "done": len(partition.done),
                        },
                        self._settings.max_traces,
                    ),
                }
                if not partition.pending:
                    values.update(status=SessionStatus.COMPLETED, completed_at=now)
                updated = await uow.sessions.update(session_id, **values)

            enqueued = await self._enqueue(updated, partition.pending)

        logger.info(
            "会话已恢复",
            session_id=session_id,
            enqueued=enqueued,
            already_done=len(partition.done),
        )
        return ResumeResult(
            success=True,
            session_id=session_id,
            status=updated.status,
            enqueued=enqueued,
            already_done=len(partition.done),
            message="会话已恢复",
        )

    async def _resume_issues(self, session: SessionRecord) -> list[str]:
        issues: list[str] = []
        if session.status is not SessionStatus.PAUSED:
            issues.append(
                f"只有 PAUSED 的会话可以恢复（当前 {session.status.value}）"
            )
        age = utcnow() - _as_utc(session.created_at)
        if age > self._settings.max_age:
            issues.append(f"会话已过期（创建于 {age.days} 天前），建议重新创建")
        if session.error_rate > self._settings.resume_max_error_rate:
            issues.append(
                f"错误率 {session.error_rate:.0%} 过高，建议重新创建会话"
            )
        async with self._uow_factory() as uow:
            remaining = await uow.resources.existing_ids(session.resource_ids)
        if not remaining:
            issues.append("会话中的资源都已不存在")
        return issues

    async def cancel(self, session_id: str) -> SessionRecord:
        """取消会话：进入 FAILED（CANCELLED），不再派发新任务。"""
        async with self._uow_factory() as uow:
            session = await uow.sessions.get(session_id, for_update=True)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.status.is_terminal:
                raise InvalidSessionStateError(
                    f"会话已处于终态 {session.status.value}"
                )
            updated = await uow.sessions.update(
                session_id,
                status=SessionStatus.FAILED,
                status_reason="CANCELLED",
                completed_at=utcnow(),
                traces=_append_trace(
                    session.traces, "cancel", "会话已取消", None, self._settings.max_traces
                ),
            )
        await self._queue.cancel_session(session_id)
        logger.info("会话已取消", session_id=session_id)
        return updated

    async def detect_stalled(self, shop_id: str | None = None) -> list[str]:
        """把长时间没有检查点的 RUNNING 会话转为 PAUSED（STALLED）。"""
        cutoff = utcnow() - self._settings.stale_after
        async with self._uow_factory() as uow:
            stalled = await uow.sessions.list_stalled(cutoff, shop_id)
        paused: list[str] = []
        for session in stalled:
            try:
                await self.pause(session.id, reason="STALLED")
            except InvalidSessionStateError:
                continue
            paused.append(session.id)
        if paused:
            logger.warning("检测到停滞的会话", sessions=paused)
        return paused

    async def archive(self, session_id: str) -> SessionRecord:
        async with self._uow_factory() as uow:
            session = await uow.sessions.get(session_id, for_update=True)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.status is SessionStatus.RUNNING:
                raise InvalidSessionStateError("运行中的会话不能归档")
            return await uow.sessions.update(session_id, archived=True)

    # ---- 查询 ----

    async def get_status(self, session_id: str) -> SessionReport:
        async with self._uow_factory() as uow:
            session = await uow.sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            pending = await uow.sessions.count_items(
                session_id, SessionItemState.PENDING
            )
            recent = await uow.errors.list_recent(session_id=session_id, limit=10)
        total = session.total_items
        percent = min(100.0, round(session.processed / total * 100, 2)) if total else 100.0
        duration = None
        if session.started_at is not None:
            end = session.completed_at or utcnow()
            duration = round((_as_utc(end) - _as_utc(session.started_at)).total_seconds(), 3)
        return SessionReport(
            session=session,
            progress_percent=percent,
            pending_items=pending,
            duration_seconds=duration,
            recent_errors=recent,
        )

    async def list_sessions(
        self,
        shop_id: str | None = None,
        *,
        statuses: Iterable[SessionStatus] | None = None,
        include_archived: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SessionRecord]:
        async with self._uow_factory() as uow:
            return await uow.sessions.list(
                shop_id=shop_id,
                statuses=statuses,
                include_archived=include_archived,
                limit=limit,
                offset=offset,
            )

    async def add_trace(
        self,
        session_id: str,
        step: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> SessionRecord:
        async with self._uow_factory() as uow:
            session = await uow.sessions.get(session_id, for_update=True)
            if session is None:
                raise SessionNotFoundError(session_id)
            return await uow.sessions.update(
                session_id,
                traces=_append_trace(
                    session.traces, step, message, data, self._settings.max_traces
                ),
            )
