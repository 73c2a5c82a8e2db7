# src/shoptrans/application/skip_engine.py
"""
跳过决策引擎。

对每个 (资源, 语言) 判断当前是否需要翻译。判定是只读的：不写存储，
结果按 (指纹, 阈值, 覆盖标记) 缓存在显式传入的 `DecisionCache` 中。
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence

import structlog

from shoptrans.config import ShopTransConfig, SkipSettings
from shoptrans.core.types import (
    BatchProgress,
    Override,
    ResourceRecord,
    SkipAction,
    SkipDecision,
    SkipReason,
    SyncStatus,
    TranslationRecord,
    WorkKey,
)
from shoptrans.domain.fingerprint import has_translatable_content
from shoptrans.infrastructure.cache import DecisionCache
from shoptrans.infrastructure.uow import UowFactory
from shoptrans.observability.telemetry import Telemetry

from .streams import EventStream

logger = structlog.get_logger(__name__)

CONFIDENCE: dict[SkipReason, float] = {
    SkipReason.NEW: 1.0,
    SkipReason.UP_TO_DATE: 1.0,
    SkipReason.STALE: 0.95,
    SkipReason.LOW_QUALITY: 0.8,
    SkipReason.QUALITY_CAP_REACHED: 0.9,
    SkipReason.RETRY_FAILED: 0.85,
    SkipReason.RETRY_LIMIT_REACHED: 0.9,
    SkipReason.UNSYNCED: 0.7,
    SkipReason.USER_REQUESTED: 1.0,
    SkipReason.FORCE_RELATED: 1.0,
    SkipReason.EMPTY_CONTENT: 1.0,
    SkipReason.LANGUAGE_EXCLUDED: 1.0,
    SkipReason.RESOURCE_TYPE_EXCLUDED: 1.0,
    SkipReason.RESOURCE_NOT_FOUND: 1.0,
    SkipReason.EVALUATION_ERROR: 0.0,
}


def _decision(
    resource_id: str,
    language: str,
    action: SkipAction,
    reason: SkipReason,
    fingerprint: str | None = None,
) -> SkipDecision:
    return SkipDecision(
        resource_id=resource_id,
        language=language,
        action=action,
        reason=reason,
        confidence=CONFIDENCE[reason],
        fingerprint=fingerprint,
    )


def decide(
    resource: ResourceRecord,
    translation: TranslationRecord | None,
    language: str,
    threshold: float,
    settings: SkipSettings,
    override: Override | None = None,
) -> SkipDecision:
    """
    纯函数形式的判定，按优先级取第一个命中的规则：

    策略排除 → 无译文(NEW) → 显式覆盖 → UP_TO_DATE → STALE →
    LOW_QUALITY / QUALITY_CAP_REACHED → RETRY_FAILED / RETRY_LIMIT_REACHED → UNSYNCED。

    质量分未知视为达标；重试上限优先于 LOW_QUALITY。
    """
    rid, fp = resource.id, resource.content_fingerprint

    def make(action: SkipAction, reason: SkipReason) -> SkipDecision:
        return _decision(rid, language, action, reason, fp)

    if language in settings.excluded_languages:
        return make(SkipAction.SKIP, SkipReason.LANGUAGE_EXCLUDED)
    excluded_types = {t.upper() for t in settings.excluded_resource_types}
    if resource.resource_type.upper() in excluded_types:
        return make(SkipAction.SKIP, SkipReason.RESOURCE_TYPE_EXCLUDED)
    if settings.skip_empty_content and not has_translatable_content(
        resource.content_fields
    ):
        return make(SkipAction.SKIP, SkipReason.EMPTY_CONTENT)

    if translation is None:
        return make(SkipAction.TRANSLATE, SkipReason.NEW)
    if override is not None:
        return make(SkipAction.TRANSLATE, SkipReason(override.value))

    same_source = translation.source_fingerprint == fp
    quality_ok = (
        translation.quality_score is None or translation.quality_score >= threshold
    )
    at_cap = translation.retry_count >= settings.max_retries

    if same_source and translation.sync_status is SyncStatus.SYNCED and quality_ok:
        return make(SkipAction.SKIP, SkipReason.UP_TO_DATE)
    if not same_source:
        return make(SkipAction.TRANSLATE, SkipReason.STALE)
    if not quality_ok:
        if at_cap:
            return make(SkipAction.SKIP, SkipReason.QUALITY_CAP_REACHED)
        return make(SkipAction.TRANSLATE, SkipReason.LOW_QUALITY)
    if translation.sync_status is SyncStatus.FAILED:
        if at_cap:
            return make(SkipAction.SKIP, SkipReason.RETRY_LIMIT_REACHED)
        return make(SkipAction.RETRY_ELIGIBLE, SkipReason.RETRY_FAILED)
    return make(SkipAction.TRANSLATE, SkipReason.UNSYNCED)


class SkipDecisionEngine:
    def __init__(
        self,
        uow_factory: UowFactory,
        config: ShopTransConfig,
        cache: DecisionCache | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._settings = config.skip
        self._cache = cache
        self._telemetry = telemetry or Telemetry()
        self.progress: EventStream[BatchProgress] = EventStream("skip-progress")

    @property
    def cache(self) -> DecisionCache | None:
        return self._cache

    def _threshold(self, quality_threshold: float | None) -> float:
        if quality_threshold is None:
            return self._settings.quality_threshold
        return quality_threshold

    def _generation(self, resource_id: str) -> int | None:
        """在读取存储之前取缓存代数，写回时据此丢弃失效前读到的决策。"""
        return self._cache.generation(resource_id) if self._cache is not None else None

    async def _decide_cached(
        self,
        resource: ResourceRecord,
        translation: TranslationRecord | None,
        language: str,
        threshold: float,
        override: Override | None,
        generation: int | None = None,
    ) -> SkipDecision:
        if self._cache is None:
            return decide(
                resource, translation, language, threshold, self._settings, override
            )
        key = DecisionCache.make_key(
            resource.id,
            language,
            resource.content_fingerprint,
            threshold,
            override.value if override else None,
        )
        cached = await self._cache.get(key)
        if cached is not None:
            return cached
        result = decide(
            resource, translation, language, threshold, self._settings, override
        )
        await self._cache.set(key, result, generation=generation)
        return result

    async def evaluate(
        self,
        resource: ResourceRecord | str,
        language: str,
        quality_threshold: float | None = None,
        *,
        override: Override | None = None,
    ) -> SkipDecision:
        """判定单个 (资源, 语言)。传入资源 ID 时从存储加载，不存在则返回 RESOURCE_NOT_FOUND。"""
        threshold = self._threshold(quality_threshold)
        generation = self._generation(
            resource if isinstance(resource, str) else resource.id
        )
        async with self._uow_factory() as uow:
            if isinstance(resource, str):
                record = await uow.resources.get(resource)
                if record is None:
                    return _decision(
                        resource, language, SkipAction.SKIP, SkipReason.RESOURCE_NOT_FOUND
                    )
            else:
                record = resource
            translation = await uow.translations.get(record.id, language)
        return await self._decide_cached(
            record, translation, language, threshold, override, generation
        )

    async def batch_evaluate(
        self,
        resources: Sequence[ResourceRecord | str],
        languages: Iterable[str],
        *,
        quality_threshold: float | None = None,
        override: Override | None = None,
        concurrency: int | None = None,
        session_id: str | None = None,
        progress: EventStream[BatchProgress] | None = None,
    ) -> dict[WorkKey, SkipDecision]:
        """
        分块并发地判定一批 (资源, 语言)。

        单项或整块失败（含超时）只影响自身，对应条目记为 translate/EVALUATION_ERROR。
        每完成一项发布一条 `BatchProgress`。
        """
        langs = list(dict.fromkeys(languages))
        ids = list(
            dict.fromkeys(r if isinstance(r, str) else r.id for r in resources)
        )
        given = {r.id: r for r in resources if not isinstance(r, str)}
        threshold = self._threshold(quality_threshold)
        total = len(ids) * len(langs)
        results: dict[WorkKey, SkipDecision] = {}
        if not total:
            return results

        streams = [self.progress] + ([progress] if progress is not None else [])
        semaphore = asyncio.Semaphore(concurrency or self._settings.concurrency)
        size = self._settings.chunk_size
        chunks = [ids[i : i + size] for i in range(0, len(ids), size)]

        def record(decision: SkipDecision) -> None:
            results[decision.key] = decision
            event = BatchProgress(
                session_id=session_id,
                completed=len(results),
                total=total,
                resource_id=decision.resource_id,
                language=decision.language,
                reason=decision.reason,
            )
            for stream in streams:
                stream.publish(event)

        async def run_chunk(chunk: list[str]) -> None:
            async with semaphore:
                try:
                    await asyncio.wait_for(
                        self._evaluate_chunk(
                            chunk, langs, given, threshold, override, record
                        ),
                        timeout=self._settings.evaluation_timeout,
                    )
                except Exception as e:
                    logger.warning(
                        "批量判定的分块失败，未完成条目标记为 EVALUATION_ERROR",
                        chunk_size=len(chunk),
                        error=f"{type(e).__name__}: {e}",
                    )
                    for rid in chunk:
                        for lang in langs:
                            if (rid, lang) not in results:
                                record(
                                    _decision(
                                        rid,
                                        lang,
                                        SkipAction.TRANSLATE,
                                        SkipReason.EVALUATION_ERROR,
                                    )
                                )

        async with self._telemetry.pipeline(
            "skip.batch_evaluate", total=total, session_id=session_id
        ):
            await asyncio.gather(*(run_chunk(chunk) for chunk in chunks))
        return results

    async def _evaluate_chunk(
        self,
        chunk: list[str],
        languages: list[str],
        given: dict[str, ResourceRecord],
        threshold: float,
        override: Override | None,
        record,
    ) -> None:
        generations = {rid: self._generation(rid) for rid in chunk}
        async with self._uow_factory() as uow:
            missing = [rid for rid in chunk if rid not in given]
            loaded = await uow.resources.get_many(missing) if missing else {}
            translations = await uow.translations.get_many(chunk, languages)

        for rid in chunk:
            resource = given.get(rid) or loaded.get(rid)
            for lang in languages:
                if resource is None:
                    record(
                        _decision(
                            rid, lang, SkipAction.SKIP, SkipReason.RESOURCE_NOT_FOUND
                        )
                    )
                    continue
                try:
                    decision = await self._decide_cached(
                        resource,
                        translations.get((rid, lang)),
                        lang,
                        threshold,
                        override,
                        generations[rid],
                    )
                except Exception as e:
                    logger.warning(
                        "单项判定失败",
                        resource_id=rid,
                        language=lang,
                        error=f"{type(e).__name__}: {e}",
                    )
                    decision = _decision(
                        rid,
                        lang,
                        SkipAction.TRANSLATE,
                        SkipReason.EVALUATION_ERROR,
                        resource.content_fingerprint,
                    )
                record(decision)
