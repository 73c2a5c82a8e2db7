# src/shoptrans/application/version_tracker.py
"""
内容版本追踪器。

对资源的可翻译字段计算指纹，比较上游快照与已存指纹，得出新增/修改/删除。
检测到的每个变更都会作为 `ChangeRecord` 发布到 `changes` 事件流；
追踪器本身从不触发翻译。
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

import structlog

from shoptrans.config import ShopTransConfig
from shoptrans.core.exceptions import IncompleteContentError, ResourceNotFoundError
from shoptrans.core.types import (
    ChangeDetection,
    ChangeEvent,
    ChangeRecord,
    ChangeType,
    ResourceRecord,
    ResourceSnapshot,
    ScanReport,
)
from shoptrans.core.utils import utcnow
from shoptrans.domain.fingerprint import (
    compute_content_fingerprint,
    missing_required_fields,
)
from shoptrans.infrastructure.cache import DecisionCache
from shoptrans.infrastructure.uow import UowFactory
from shoptrans.observability.telemetry import Telemetry

from .streams import EventStream

logger = structlog.get_logger(__name__)


class VersionTracker:
    def __init__(
        self,
        uow_factory: UowFactory,
        config: ShopTransConfig,
        cache: DecisionCache | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._config = config
        self._cache = cache
        self._telemetry = telemetry or Telemetry()
        self.changes: EventStream[ChangeRecord] = EventStream("content-changes")

    # ---- 指纹 ----

    @staticmethod
    def compute_fingerprint(content: Mapping[str, Any]) -> str:
        return compute_content_fingerprint(content)

    def check_completeness(
        self, resource_id: str, resource_type: str, content: Mapping[str, Any]
    ) -> None:
        """必需字段缺失或为空白时抛出 IncompleteContentError。"""
        required = self._config.tracker.required_fields.get(resource_type.upper(), [])
        missing = missing_required_fields(content, required)
        if missing:
            raise IncompleteContentError(resource_id, missing)

    async def detect_change(
        self, resource_id: str, new_hash: str | None
    ) -> ChangeDetection:
        """`new_hash` 为 None 表示资源已在上游消失。"""
        async with self._uow_factory() as uow:
            existing = await uow.resources.get(resource_id)
        return _detection(existing, new_hash)

    async def sync_version(
        self,
        resource_id: str,
        fingerprint: str,
        content: Mapping[str, Any] | None = None,
        *,
        shop_id: str | None = None,
        resource_type: str | None = None,
    ) -> ResourceRecord:
        """
        在一个事务内持久化新指纹；指纹变化时 `content_version` 加一。

        资源尚不存在时必须提供 `shop_id` 与 `resource_type`。
        """
        async with self._uow_factory() as uow:
            existing = await uow.resources.get(resource_id)
            if existing is None and (shop_id is None or resource_type is None):
                raise ResourceNotFoundError(resource_id)
            record = await uow.resources.upsert(
                resource_id=resource_id,
                shop_id=shop_id or existing.shop_id,  # type: ignore[union-attr]
                resource_type=resource_type or existing.resource_type,  # type: ignore[union-attr]
                content=dict(
                    content
                    if content is not None
                    else (existing.content_fields if existing else {})
                ),
                fingerprint=fingerprint,
                scanned_at=utcnow(),
            )
        if existing is None or existing.content_fingerprint != fingerprint:
            await self._invalidate(resource_id)
        return record

    # ---- 摄入 ----

    async def ingest(self, snapshot: ResourceSnapshot) -> ChangeRecord:
        """校验完整性、检测变更并落库，返回变更记录（可能是 UNCHANGED）。"""
        self.check_completeness(snapshot.id, snapshot.resource_type, snapshot.content)
        fingerprint = self.compute_fingerprint(snapshot.content)
        now = utcnow()

        async with self._uow_factory() as uow:
            existing = await uow.resources.get(snapshot.id)
            detection = _detection(existing, fingerprint)
            if detection.is_new or detection.is_modified:
                record = await uow.resources.upsert(
                    resource_id=snapshot.id,
                    shop_id=snapshot.shop_id,
                    resource_type=snapshot.resource_type,
                    content=snapshot.content,
                    fingerprint=fingerprint,
                    scanned_at=now,
                )
                version: int | None = record.content_version
            else:
                await uow.resources.touch_scanned([snapshot.id], now)
                version = existing.content_version if existing else None

        if detection.is_new:
            change_type = ChangeType.NEW
        elif detection.is_modified:
            change_type = ChangeType.MODIFIED
        else:
            change_type = ChangeType.UNCHANGED

        change = ChangeRecord(
            resource_id=snapshot.id,
            shop_id=snapshot.shop_id,
            resource_type=snapshot.resource_type,
            change_type=change_type,
            previous_hash=detection.previous_hash,
            current_hash=fingerprint,
            content_version=version,
            detected_at=now,
        )
        if change_type is not ChangeType.UNCHANGED:
            await self._invalidate(snapshot.id)
            self.changes.publish(change)
            logger.debug(
                "检测到内容变更",
                resource_id=snapshot.id,
                change_type=change_type.value,
                version=version,
            )
        return change

    async def _remove(
        self, shop_id: str, resource_id: str, resource_type: str, previous_hash: str | None
    ) -> ChangeRecord | None:
        async with self._uow_factory() as uow:
            removed = await uow.resources.delete(resource_id)
        if not removed:
            return None
        change = ChangeRecord(
            resource_id=resource_id,
            shop_id=shop_id,
            resource_type=resource_type,
            change_type=ChangeType.DELETED,
            previous_hash=previous_hash,
            detected_at=utcnow(),
        )
        await self._invalidate(resource_id)
        self.changes.publish(change)
        return change

    # ---- 扫描 ----

    async def full_scan(
        self,
        shop_id: str,
        snapshots: Iterable[ResourceSnapshot],
        resource_types: Iterable[str] | None = None,
    ) -> ScanReport:
        """
        全量扫描：上游快照集合必须是完整的。

        存储中有而快照中没有的资源视为已删除，连同其译文一并移除；
        内容不完整的资源仍视为存在，不会被删除。
        """
        types = {t.upper() for t in resource_types} if resource_types else None
        items = [
            s
            for s in snapshots
            if s.shop_id == shop_id and (types is None or s.resource_type.upper() in types)
        ]
        report = ScanReport(shop_id=shop_id)

        async with self._telemetry.pipeline("tracker.full_scan", shop_id=shop_id):
            await self._ingest_all(items, report)

            async with self._uow_factory() as uow:
                stored = await uow.resources.list_by_shop(
                    shop_id, sorted(types) if types else None
                )
            seen = {s.id for s in items}
            for record in stored:
                if record.id in seen:
                    continue
                change = await self._remove(
                    shop_id, record.id, record.resource_type, record.content_fingerprint
                )
                if change is not None:
                    report.changes.append(change)

        logger.info(
            "全量扫描完成",
            shop_id=shop_id,
            new=len(report.new),
            modified=len(report.modified),
            deleted=len(report.deleted),
            unchanged=report.unchanged,
            incomplete=len(report.incomplete),
        )
        return report

    async def incremental_scan(
        self,
        shop_id: str,
        snapshots: Iterable[ResourceSnapshot],
        since: datetime,
    ) -> ScanReport:
        """增量扫描：只考虑 `updated_at >= since` 的快照，从不推断删除。"""
        items = [
            s
            for s in snapshots
            if s.shop_id == shop_id and s.updated_at is not None and s.updated_at >= since
        ]
        report = ScanReport(shop_id=shop_id)
        async with self._telemetry.pipeline(
            "tracker.incremental_scan", shop_id=shop_id, candidates=len(items)
        ):
            await self._ingest_all(items, report)
        return report

    async def _ingest_all(
        self, snapshots: list[ResourceSnapshot], report: ScanReport
    ) -> None:
        for snapshot in snapshots:
            try:
                change = await self.ingest(snapshot)
            except IncompleteContentError as e:
                report.incomplete[e.resource_id] = e.missing_fields
                logger.warning(
                    "资源内容不完整，保留原指纹",
                    resource_id=e.resource_id,
                    missing=e.missing_fields,
                )
                continue
            if change.change_type is ChangeType.UNCHANGED:
                report.unchanged += 1
            else:
                report.changes.append(change)

    # ---- webhook ----

    async def apply_event(self, event: ChangeEvent) -> ChangeRecord | None:
        """
        处理规范化的 webhook 事件。

        删除事件移除资源；其余事件把变更字段合并进已存内容后重新计算指纹。
        删除一个不存在的资源返回 None。
        """
        if event.deleted:
            async with self._uow_factory() as uow:
                existing = await uow.resources.get(event.resource_id)
            return await self._remove(
                event.shop_id,
                event.resource_id,
                event.resource_type,
                existing.content_fingerprint if existing else None,
            )

        async with self._uow_factory() as uow:
            existing = await uow.resources.get(event.resource_id)
        merged: dict[str, Any] = dict(existing.content_fields) if existing else {}
        merged.update(event.changed_fields)
        return await self.ingest(
            ResourceSnapshot(
                id=event.resource_id,
                shop_id=event.shop_id,
                resource_type=event.resource_type,
                content=merged,
                updated_at=utcnow(),
            )
        )

    async def _invalidate(self, resource_id: str) -> None:
        if self._cache is not None:
            await self._cache.invalidate_resource(resource_id)


def _detection(existing: ResourceRecord | None, new_hash: str | None) -> ChangeDetection:
    previous = existing.content_fingerprint if existing else None
    if new_hash is None:
        return ChangeDetection(
            is_new=False,
            is_modified=False,
            is_deleted=existing is not None,
            previous_hash=previous,
        )
    return ChangeDetection(
        is_new=existing is None,
        is_modified=existing is not None and previous != new_hash,
        is_deleted=False,
        previous_hash=previous,
    )
