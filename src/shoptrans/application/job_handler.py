# src/shoptrans/application/job_handler.py
"""
翻译任务处理器：工作队列的执行与提交两段式回调。

`execute` 只调用外部执行器，`commit` 在队列持有键锁时把结果写入存储。
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from shoptrans.config import ShopTransConfig
from shoptrans.core.exceptions import ResourceNotFoundError
from shoptrans.core.interfaces import TranslationExecutor
from shoptrans.core.types import (
    ExecutorResult,
    JobRecord,
    ResourceRecord,
    ResourceStatus,
    SyncStatus,
    TranslationRecord,
)
from shoptrans.core.utils import utcnow
from shoptrans.domain.diagnosis import error_code_of
from shoptrans.infrastructure.cache import DecisionCache
from shoptrans.infrastructure.uow import UowFactory

logger = structlog.get_logger(__name__)

# 以下选项由处理器消费，不传给执行器
_HANDLER_OPTIONS = frozenset({"content_overrides", "fields", "quality_threshold"})
_MAX_ERROR_LENGTH = 1000


@dataclass
class JobOutcome:
    resource: ResourceRecord
    result: ExecutorResult
    requested_fields: list[str] = field(default_factory=list)


def _retry_base(existing: TranslationRecord | None, fingerprint: str | None) -> int:
    """源内容变化后重试计数从零开始。"""
    if existing is None or existing.source_fingerprint != fingerprint:
        return 0
    return existing.retry_count


class TranslationJobHandler:
    def __init__(
        self,
        uow_factory: UowFactory,
        executor: TranslationExecutor,
        config: ShopTransConfig,
        cache: DecisionCache | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._executor = executor
        self._config = config
        self._cache = cache

    async def execute(self, job: JobRecord) -> JobOutcome:
        spec = job.spec
        async with self._uow_factory() as uow:
            resource = await uow.resources.get(spec.resource_id)
            if resource is None:
                raise ResourceNotFoundError(spec.resource_id)
            await uow.resources.set_status(resource.id, ResourceStatus.PROCESSING)
            # 任务开始即重新领取该键，之后的提交与失败写入只能让同步状态前进
            await uow.translations.mark_requeued(spec.resource_id, spec.language)

        content = dict(resource.content_fields)
        content.update(spec.options.get("content_overrides") or {})
        only = spec.options.get("fields")
        if only:
            content = {k: v for k, v in content.items() if k in only}
        requested = [k for k, v in content.items() if isinstance(v, str) and v.strip()]

        options = {k: v for k, v in spec.options.items() if k not in _HANDLER_OPTIONS}
        result = await self._executor.translate(content, spec.language, options)
        return JobOutcome(resource=resource, result=result, requested_fields=requested)

    async def commit(self, job: JobRecord, outcome: JobOutcome) -> None:
        spec = job.spec
        resource, result = outcome.resource, outcome.result
        threshold = spec.options.get(
            "quality_threshold", self._config.skip.quality_threshold
        )
        now = utcnow()

        async with self._uow_factory() as uow:
            existing = await uow.translations.get(spec.resource_id, spec.language)
            fields = dict(existing.translated_fields or {}) if existing else {}
            fields.update(result.fields)
            missing = [f for f in outcome.requested_fields if f not in result.fields]
            status = SyncStatus.PARTIAL if missing and not result.skipped else SyncStatus.SYNCED
            quality = result.quality_score
            below = quality is not None and quality < threshold
            retry_count = (
                _retry_base(existing, resource.content_fingerprint) + 1 if below else 0
            )
            await uow.translations.upsert(
                resource_id=spec.resource_id,
                shop_id=spec.shop_id,
                language=spec.language,
                sync_status=status,
                translated_fields=fields,
                source_fingerprint=resource.content_fingerprint,
                quality_score=quality,
                retry_count=retry_count,
                skip_reason=result.reason if result.skipped else None,
                last_error=None,
                last_attempt_at=now,
                session_id=_session_of(spec.session_ids, existing),
            )
            await uow.resources.set_status(resource.id, ResourceStatus.COMPLETED)
            await uow.errors.resolve_for_subject(spec.resource_id, spec.language, now)

        if self._cache is not None:
            await self._cache.invalidate_resource(spec.resource_id)
        logger.debug(
            "译文已提交",
            resource_id=spec.resource_id,
            language=spec.language,
            sync_status=status.value,
            quality=quality,
            missing_fields=missing or None,
        )

    async def record_failure(self, job: JobRecord, error: BaseException) -> None:
        """把终态失败记到译文行；资源已不存在时无行可写。"""
        spec = job.spec
        message = f"{error_code_of(error)}: {error}"[:_MAX_ERROR_LENGTH]
        async with self._uow_factory() as uow:
            resource = await uow.resources.get(spec.resource_id)
            if resource is None:
                return
            existing = await uow.translations.get(spec.resource_id, spec.language)
            await uow.translations.upsert(
                resource_id=spec.resource_id,
                shop_id=spec.shop_id,
                language=spec.language,
                sync_status=SyncStatus.FAILED,
                retry_count=_retry_base(existing, resource.content_fingerprint) + 1,
                source_fingerprint=resource.content_fingerprint,
                last_error=message,
                last_attempt_at=utcnow(),
                session_id=_session_of(spec.session_ids, existing),
            )
            await uow.resources.set_status(resource.id, ResourceStatus.PENDING)

        if self._cache is not None:
            await self._cache.invalidate_resource(spec.resource_id)


def _session_of(session_ids: list[str], existing: TranslationRecord | None) -> str | None:
    if session_ids:
        return session_ids[0]
    return existing.session_id if existing else None
