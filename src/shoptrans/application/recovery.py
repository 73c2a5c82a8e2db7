# src/shoptrans/application/recovery.py
"""
自动恢复服务。

失败只在这里被诊断一次，得到 `Diagnosis` 后按 `ErrorKind` 分派到恢复策略：

    TIMEOUT / NETWORK      → 线性退避后重新入队
    RATE_LIMIT             → 指数退避后重新入队
    QUALITY_VALIDATION     → 调整执行参数后重新入队
    HTML_STRUCTURE         → 修复标签后重新入队
    CONTENT_TOO_LONG       → 分段后重新入队
    RESOURCE_NOT_FOUND     → 终态跳过
    UNKNOWN                → 无可用策略

同一错误指纹在同一 (资源, 语言) 上的恢复次数在滑动窗口内受限，
超过上限后不再执行任何策略。每次策略执行都会留下一条恢复记录。
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import structlog

from shoptrans.config import ShopTransConfig
from shoptrans.core.exceptions import ConfigurationError
from shoptrans.core.types import (
    BatchRecoveryOptions,
    BatchRecoverySummary,
    Diagnosis,
    ErrorKind,
    HealthCheck,
    HealthReport,
    HealthTier,
    JobRecord,
    JobSpec,
    RecoveryAction,
    RecoveryContext,
    RecoveryOutcome,
    SessionRecoveryResult,
    SessionStatus,
    SkipReason,
    SyncStatus,
    TranslationRecord,
    Urgency,
)
from shoptrans.core.utils import utcnow
from shoptrans.domain.diagnosis import classify_error
from shoptrans.domain.markup import repair_markup_fields, split_long_fields
from shoptrans.infrastructure.cache import DecisionCache
from shoptrans.infrastructure.uow import UowFactory
from shoptrans.observability.telemetry import Telemetry

from .sessions import SessionManager
from .work_queue import WorkQueue

logger = structlog.get_logger(__name__)

Strategy = Callable[[Diagnosis, RecoveryContext, int], Awaitable[RecoveryOutcome]]

# 参数调整策略追加给执行器的选项
ADJUSTED_PARAMETERS: dict[str, Any] = {"temperature": 0.3, "simplified_prompt": True}

_HEALTH_TIERS: tuple[tuple[int, HealthTier], ...] = (
    (4, HealthTier.HEALTHY),
    (3, HealthTier.MOSTLY_HEALTHY),
    (2, HealthTier.CONCERNING),
)

_RECOMMENDATIONS: dict[str, str] = {
    "storage_latency": "存储响应缓慢，检查数据库负载与连接池配置",
    "translation_failure_rate": "翻译失败率偏高，检查翻译执行器状态与配额",
    "error_volume": "近期错误数量较多，查看错误日志中的高频指纹",
    "stalled_sessions": "存在停滞的会话，确认 worker 是否在运行后手动恢复",
}


class RecoveryService:
    def __init__(
        self,
        uow_factory: UowFactory,
        config: ShopTransConfig,
        queue: WorkQueue,
        sessions: SessionManager,
        cache: DecisionCache | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._config = config
        self._settings = config.recovery
        self._queue = queue
        self._sessions = sessions
        self._cache = cache
        self._telemetry = telemetry or Telemetry()

        self._strategies: dict[ErrorKind, Strategy] = {
            ErrorKind.TIMEOUT: self._linear_backoff_retry,
            ErrorKind.NETWORK: self._linear_backoff_retry,
            ErrorKind.RATE_LIMIT: self._exponential_backoff_retry,
            ErrorKind.QUALITY_VALIDATION: self._adjust_parameters,
            ErrorKind.HTML_STRUCTURE: self._repair_markup,
            ErrorKind.CONTENT_TOO_LONG: self._split_content,
            ErrorKind.RESOURCE_NOT_FOUND: self._terminal_skip,
            ErrorKind.UNKNOWN: self._no_strategy,
        }
        missing = set(ErrorKind) - set(self._strategies)
        if missing:
            raise ConfigurationError(
                f"以下错误类别没有恢复策略: {sorted(k.value for k in missing)}"
            )

    # ---- 诊断 ----

    def diagnose(self, error: BaseException | str, code: str | None = None) -> Diagnosis:
        return classify_error(error, code)

    async def diagnose_and_recover(
        self,
        error: BaseException | str,
        context: RecoveryContext,
        *,
        diagnosis: Diagnosis | None = None,
    ) -> RecoveryOutcome:
        """
        诊断错误并执行对应的恢复策略。

        不会抛出异常：恢复流程自身出错时返回 RECOVERY_FAILED。
        """
        diagnosis = diagnosis or self.diagnose(error)
        if not self._settings.enabled:
            return RecoveryOutcome(
                success=False,
                action=RecoveryAction.RECOVERY_DISABLED,
                diagnosis=diagnosis,
                message="自动恢复已禁用",
            )

        try:
            now = utcnow()
            async with self._uow_factory() as uow:
                await uow.errors.record_error(diagnosis, context, now)
                attempts = await uow.errors.count_attempts(
                    diagnosis.fingerprint,
                    context.shop_id,
                    now - self._settings.window,
                )
            if attempts >= self._settings.max_attempts:
                logger.warning(
                    "恢复次数已达上限，放弃恢复",
                    fingerprint=diagnosis.fingerprint,
                    shop_id=context.shop_id,
                    attempts=attempts,
                )
                return RecoveryOutcome(
                    success=False,
                    action=RecoveryAction.EXCEEDED_RETRY_LIMIT,
                    diagnosis=diagnosis,
                    message=f"{self._settings.window} 内已尝试恢复 {attempts} 次",
                    details={"attempts": attempts},
                )

            strategy = self._strategies[diagnosis.kind]
            async with self._telemetry.step(
                "recovery.strategy",
                kind=diagnosis.kind.value,
                resource_id=context.resource_id,
                language=context.language,
            ):
                outcome = await strategy(diagnosis, context, attempts)

            if outcome.action is not RecoveryAction.NO_STRATEGY_AVAILABLE:
                await self._record_attempt(diagnosis, context, outcome)
        except Exception as e:
            logger.exception(
                "恢复流程出错",
                kind=diagnosis.kind.value,
                resource_id=context.resource_id,
                language=context.language,
            )
            return RecoveryOutcome(
                success=False,
                action=RecoveryAction.RECOVERY_FAILED,
                diagnosis=diagnosis,
                message=f"{type(e).__name__}: {e}",
            )

        logger.info(
            "恢复策略已执行",
            kind=diagnosis.kind.value,
            action=outcome.action.value,
            success=outcome.success,
            requeued_job_id=outcome.requeued_job_id,
        )
        return outcome

    async def _record_attempt(
        self, diagnosis: Diagnosis, context: RecoveryContext, outcome: RecoveryOutcome
    ) -> None:
        async with self._uow_factory() as uow:
            await uow.errors.add_attempt(
                diagnosis=diagnosis,
                context=context,
                strategy=outcome.action,
                success=outcome.success,
                message=outcome.message,
                details=outcome.details,
                at=utcnow(),
            )

    async def handle_job_failure(
        self, job: JobRecord, error: BaseException
    ) -> str | None:
        """工作队列的失败处理钩子；返回重新入队的任务 ID。"""
        spec = job.spec
        context = RecoveryContext(
            shop_id=spec.shop_id,
            resource_id=spec.resource_id,
            language=spec.language,
            session_id=spec.session_ids[0] if spec.session_ids else None,
            job_spec=spec,
        )
        outcome = await self.diagnose_and_recover(error, context)
        return outcome.requeued_job_id

    # ---- 策略 ----

    async def _linear_backoff_retry(
        self, diagnosis: Diagnosis, context: RecoveryContext, attempts: int
    ) -> RecoveryOutcome:
        delay = min(
            self._settings.linear_backoff * (attempts + 1), self._settings.max_backoff
        )
        return await self._requeue(
            diagnosis, context, RecoveryAction.LINEAR_BACKOFF_RETRY, delay=delay
        )

    async def _exponential_backoff_retry(
        self, diagnosis: Diagnosis, context: RecoveryContext, attempts: int
    ) -> RecoveryOutcome:
        delay = min(
            self._settings.linear_backoff * self._settings.exponential_base**attempts,
            self._settings.max_backoff,
        )
        return await self._requeue(
            diagnosis, context, RecoveryAction.EXPONENTIAL_BACKOFF_RETRY, delay=delay
        )

    async def _adjust_parameters(
        self, diagnosis: Diagnosis, context: RecoveryContext, attempts: int
    ) -> RecoveryOutcome:
        return await self._requeue(
            diagnosis,
            context,
            RecoveryAction.PARAMETER_ADJUSTMENT,
            options=dict(ADJUSTED_PARAMETERS),
        )

    async def _repair_markup(
        self, diagnosis: Diagnosis, context: RecoveryContext, attempts: int
    ) -> RecoveryOutcome:
        content = await self._content_of(context)
        repaired, changed = repair_markup_fields(content)
        overrides = {name: repaired[name] for name in changed}
        return await self._requeue(
            diagnosis,
            context,
            RecoveryAction.MARKUP_REPAIR,
            options={"content_overrides": overrides},
            details={"repaired_fields": changed},
        )

    async def _split_content(
        self, diagnosis: Diagnosis, context: RecoveryContext, attempts: int
    ) -> RecoveryOutcome:
        content = await self._content_of(context)
        max_chars = self._settings.split_max_chars
        segments = split_long_fields(content, max_chars)
        if not segments:
            # 没有字段超过配置上限时，按最长字段的一半切分
            longest = max(
                (len(v) for v in content.values() if isinstance(v, str)), default=0
            )
            max_chars = max(longest // 2, 1)
            segments = split_long_fields(content, max_chars)
        return await self._requeue(
            diagnosis,
            context,
            RecoveryAction.CONTENT_SPLITTING,
            options={"segments": segments},
            details={
                "max_chars": max_chars,
                "segments": {name: len(parts) for name, parts in segments.items()},
            },
        )

    async def _terminal_skip(
        self, diagnosis: Diagnosis, context: RecoveryContext, attempts: int
    ) -> RecoveryOutcome:
        """资源不存在：取消其排队任务；资源仍在存储中时把译文标记为终态。"""
        resource_id = context.resource_id
        cancelled: list[str] = []
        marked = False
        if resource_id is not None:
            cancelled = await self._queue.cancel_where(
                lambda r: r.spec.resource_id == resource_id
                and (context.language is None or r.spec.language == context.language)
            )
            if context.language is not None:
                async with self._queue.key_lock((resource_id, context.language)):
                    async with self._uow_factory() as uow:
                        resource = await uow.resources.get(resource_id)
                        if resource is not None:
                            await uow.translations.upsert(
                                resource_id=resource_id,
                                shop_id=resource.shop_id,
                                language=context.language,
                                sync_status=SyncStatus.FAILED,
                                requeue=True,
                                skip_reason=SkipReason.RESOURCE_NOT_FOUND.value,
                                retry_count=self._config.skip.max_retries,
                                source_fingerprint=resource.content_fingerprint,
                                last_attempt_at=utcnow(),
                            )
                            marked = True
                await self._invalidate(resource_id)

        return RecoveryOutcome(
            success=True,
            action=RecoveryAction.TERMINAL_SKIP,
            diagnosis=diagnosis,
            message="资源不存在，已终止处理",
            details={"cancelled_jobs": cancelled, "translation_marked": marked},
        )

    async def _no_strategy(
        self, diagnosis: Diagnosis, context: RecoveryContext, attempts: int
    ) -> RecoveryOutcome:
        return RecoveryOutcome(
            success=False,
            action=RecoveryAction.NO_STRATEGY_AVAILABLE,
            diagnosis=diagnosis,
            message=f"没有适用于 {diagnosis.code} 的恢复策略",
        )

    # ---- 重新入队 ----

    async def _content_of(self, context: RecoveryContext) -> dict[str, Any]:
        if context.resource_id is None:
            return {}
        async with self._uow_factory() as uow:
            resource = await uow.resources.get(context.resource_id)
        return dict(resource.content_fields) if resource else {}

    async def _spec_from_store(self, context: RecoveryContext) -> JobSpec | None:
        if context.resource_id is None or context.language is None:
            return None
        async with self._uow_factory() as uow:
            resource = await uow.resources.get(context.resource_id)
        if resource is None:
            return None
        return JobSpec(
            resource_id=resource.id,
            language=context.language,
            shop_id=resource.shop_id,
            resource_type=resource.resource_type,
            content_length=resource.content_length,
            session_ids=[context.session_id] if context.session_id else [],
        )

    async def _requeue(
        self,
        diagnosis: Diagnosis,
        context: RecoveryContext,
        action: RecoveryAction,
        *,
        delay: float = 0.0,
        options: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
    ) -> RecoveryOutcome:
        """把译文标回待处理并以 RECOVERY 紧急度重新入队。"""
        spec = context.job_spec or await self._spec_from_store(context)
        if spec is None:
            return RecoveryOutcome(
                success=False,
                action=action,
                diagnosis=diagnosis,
                message="缺少可重新入队的资源或语言",
            )
        spec = spec.model_copy(deep=True)
        spec.urgency = Urgency.RECOVERY
        spec.options.update(options or {})

        async with self._queue.key_lock(spec.key):
            async with self._uow_factory() as uow:
                resource = await uow.resources.get(spec.resource_id)
                if resource is None:
                    return RecoveryOutcome(
                        success=False,
                        action=action,
                        diagnosis=diagnosis,
                        message=f"资源已不存在: {spec.resource_id}",
                    )
                if await uow.translations.get(spec.resource_id, spec.language):
                    await uow.translations.upsert(
                        resource_id=spec.resource_id,
                        shop_id=spec.shop_id,
                        language=spec.language,
                        sync_status=SyncStatus.PENDING,
                        requeue=True,
                        skip_reason=None,
                    )
        await self._invalidate(spec.resource_id)

        job_id = self._queue.enqueue(spec, delay=delay)
        return RecoveryOutcome(
            success=True,
            action=action,
            diagnosis=diagnosis,
            message="已重新入队",
            requeued_job_id=job_id,
            delay_seconds=delay,
            details=details or {},
        )

    async def _invalidate(self, resource_id: str) -> None:
        if self._cache is not None:
            await self._cache.invalidate_resource(resource_id)

    # ---- 批量恢复 ----

    async def batch_recover_failed_translations(
        self, shop_id: str, options: BatchRecoveryOptions | None = None
    ) -> BatchRecoverySummary:
        """
        扫描足够旧、仍低于重试上限的失败译文并逐个恢复。

        有未解决错误日志的按其诊断分派；没有的直接重置状态后重新入队。
        """
        options = options or BatchRecoveryOptions()
        now = utcnow()
        async with self._uow_factory() as uow:
            failed = await uow.translations.list_failed(
                shop_id,
                attempted_before=now - self._settings.min_failure_age,
                max_retries=self._config.skip.max_retries,
                resource_type=options.resource_type,
                language=options.language,
                session_id=options.session_id,
                limit=options.max_batch_size or self._settings.batch_size,
            )
            candidates = [
                (t, await uow.errors.latest_for_subject(t.resource_id, t.language))
                for t in failed
            ]

        summary = BatchRecoverySummary(shop_id=shop_id)
        async with self._telemetry.pipeline(
            "recovery.batch", shop_id=shop_id, candidates=len(candidates)
        ):
            for translation, error_log in candidates:
                context = RecoveryContext(
                    shop_id=shop_id,
                    resource_id=translation.resource_id,
                    language=translation.language,
                    session_id=options.session_id or translation.session_id,
                )
                if error_log is not None:
                    outcome = await self.diagnose_and_recover(
                        error_log.message,
                        context,
                        diagnosis=self.diagnose(error_log.message, error_log.code),
                    )
                else:
                    outcome = await self._reset_status(translation, context)
                summary.results.append(outcome)
                summary.total_attempted += 1
                if outcome.success:
                    summary.recovered += 1
                else:
                    summary.failed += 1

        logger.info(
            "批量恢复完成",
            shop_id=shop_id,
            attempted=summary.total_attempted,
            recovered=summary.recovered,
            failed=summary.failed,
        )
        return summary

    async def _reset_status(
        self, translation: TranslationRecord, context: RecoveryContext
    ) -> RecoveryOutcome:
        diagnosis = self.diagnose(translation.last_error or "unknown failure")
        try:
            outcome = await self._requeue(
                diagnosis, context, RecoveryAction.STATUS_RESET
            )
            await self._record_attempt(diagnosis, context, outcome)
        except Exception as e:
            logger.exception(
                "重置失败译文状态出错",
                resource_id=translation.resource_id,
                language=translation.language,
            )
            return RecoveryOutcome(
                success=False,
                action=RecoveryAction.RECOVERY_FAILED,
                diagnosis=diagnosis,
                message=f"{type(e).__name__}: {e}",
            )
        return outcome

    async def recover_session(self, session_id: str) -> SessionRecoveryResult:
        """恢复一个失败或暂停的会话：先批量恢复其失败项，再尝试续跑。"""
        report = await self._sessions.get_status(session_id)
        session = report.session
        if session.status is SessionStatus.RUNNING:
            return SessionRecoveryResult(
                session_id=session_id, success=False, message="会话正在运行，无需恢复"
            )

        summary = await self.batch_recover_failed_translations(
            session.shop_id, BatchRecoveryOptions(session_id=session_id)
        )
        await self._sessions.add_trace(
            session_id,
            "recovery",
            "已批量恢复会话的失败项",
            {"recovered": summary.recovered, "failed": summary.failed},
        )
        if session.status is not SessionStatus.PAUSED:
            return SessionRecoveryResult(
                session_id=session_id,
                success=summary.failed == 0,
                message=f"会话状态为 {session.status.value}，仅恢复了失败项",
                summary=summary,
            )

        resume = await self._sessions.resume(session_id)
        return SessionRecoveryResult(
            session_id=session_id,
            success=resume.success,
            message=resume.message,
            summary=summary,
            resume=resume,
        )

    # ---- 健康检查 ----

    async def perform_system_health_check(self, shop_id: str) -> HealthReport:
        """执行四项检查并分级；存在问题时顺带做有限的维护。"""
        now = utcnow()
        since = now - self._settings.window
        checks = [
            await self._check_storage(),
            await self._check_failure_rate(shop_id, since),
            await self._check_error_volume(shop_id, since),
            await self._check_stalled_sessions(shop_id, now),
        ]
        healthy = sum(1 for c in checks if c.healthy)
        tier = next(
            (t for needed, t in _HEALTH_TIERS if healthy >= needed),
            HealthTier.UNHEALTHY,
        )
        issues = [c.message for c in checks if not c.healthy]

        maintenance: dict[str, int] = {}
        if issues:
            maintenance = await self._maintain(shop_id, now)

        recommendations = [_RECOMMENDATIONS[c.name] for c in checks if not c.healthy]
        if not recommendations:
            recommendations.append("系统运行正常，无需处理")

        report = HealthReport(
            shop_id=shop_id,
            tier=tier,
            checks=checks,
            issues=issues,
            recommendations=recommendations,
            maintenance=maintenance,
            checked_at=now,
        )
        self._telemetry.emit(
            "recovery.health",
            shop_id=shop_id,
            tier=tier.value,
            healthy_checks=healthy,
        )
        return report

    async def _check_storage(self) -> HealthCheck:
        threshold = self._settings.storage_latency_threshold_ms
        started = time.perf_counter()
        try:
            async with self._uow_factory() as uow:
                await uow.ping()
        except Exception as e:
            logger.warning("存储健康检查失败", error=f"{type(e).__name__}: {e}")
            return HealthCheck(
                name="storage_latency",
                healthy=False,
                threshold=threshold,
                message=f"存储不可用: {e}",
            )
        latency = round((time.perf_counter() - started) * 1000, 2)
        return HealthCheck(
            name="storage_latency",
            healthy=latency <= threshold,
            value=latency,
            threshold=threshold,
            message=f"存储延迟 {latency}ms",
        )

    async def _check_failure_rate(self, shop_id: str, since: datetime) -> HealthCheck:
        async with self._uow_factory() as uow:
            total, failures = await uow.translations.attempt_stats(shop_id, since)
        rate = round(failures / total, 4) if total else 0.0
        threshold = self._settings.failure_rate_threshold
        return HealthCheck(
            name="translation_failure_rate",
            healthy=rate <= threshold,
            value=rate,
            threshold=threshold,
            message=f"近期翻译失败率 {rate:.1%}（{failures}/{total}）",
        )

    async def _check_error_volume(self, shop_id: str, since: datetime) -> HealthCheck:
        async with self._uow_factory() as uow:
            count = await uow.errors.count_open_since(shop_id, since)
        threshold = self._settings.error_volume_threshold
        return HealthCheck(
            name="error_volume",
            healthy=count <= threshold,
            value=float(count),
            threshold=float(threshold),
            message=f"近期未解决错误 {count} 次",
        )

    async def _check_stalled_sessions(
        self, shop_id: str, now: datetime
    ) -> HealthCheck:
        cutoff = now - self._config.session.stale_after
        async with self._uow_factory() as uow:
            stalled = await uow.sessions.list_stalled(cutoff, shop_id)
        return HealthCheck(
            name="stalled_sessions",
            healthy=not stalled,
            value=float(len(stalled)),
            threshold=0.0,
            message=f"停滞的会话 {len(stalled)} 个",
        )

    async def _maintain(self, shop_id: str, now: datetime) -> dict[str, int]:
        async with self._uow_factory() as uow:
            archived = await uow.errors.archive_resolved(
                now - self._settings.error_retention,
                self._settings.maintenance_limit,
                shop_id,
            )
        paused = await self._sessions.detect_stalled(shop_id)
        logger.info(
            "健康检查维护完成",
            shop_id=shop_id,
            archived_errors=archived,
            paused_sessions=len(paused),
        )
        return {"archived_errors": archived, "paused_sessions": len(paused)}
