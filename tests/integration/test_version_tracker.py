# tests/integration/test_version_tracker.py
"""
版本追踪器的集成测试：全量扫描、增量扫描、webhook 事件与指纹同步。
"""

from datetime import timedelta

import pytest

from shoptrans.application.coordinator import Coordinator
from shoptrans.core.exceptions import IncompleteContentError, ResourceNotFoundError
from shoptrans.core.types import ChangeEvent, ChangeRecord, ChangeType, SyncStatus
from shoptrans.core.utils import utcnow
from shoptrans.infrastructure.uow import UowFactory
from tests.helpers.factories import OTHER_SHOP_ID, TEST_SHOP_ID, make_snapshot


@pytest.mark.asyncio
async def test_full_scan_detects_new_modified_unchanged_and_deleted(
    coordinator: Coordinator, uow_factory: UowFactory
) -> None:
    a = make_snapshot(resource_id="product-a", content={"title": "A"})
    b = make_snapshot(resource_id="product-b", content={"title": "B"})
    c = make_snapshot(resource_id="product-c", content={"title": "C"})

    first = await coordinator.full_scan(TEST_SHOP_ID, [a, b, c])
    assert sorted(first.new) == ["product-a", "product-b", "product-c"]

    b_changed = make_snapshot(resource_id="product-b", content={"title": "B2"})
    second = await coordinator.full_scan(TEST_SHOP_ID, [a, b_changed])

    assert second.new == []
    assert second.modified == ["product-b"]
    assert second.deleted == ["product-c"]
    assert second.unchanged == 1

    async with uow_factory() as uow:
        assert await uow.resources.get("product-c") is None
        b_record = await uow.resources.get("product-b")
    assert b_record is not None
    assert b_record.content_version == 2


@pytest.mark.asyncio
async def test_full_scan_never_deletes_incomplete_resources(
    coordinator: Coordinator, uow_factory: UowFactory
) -> None:
    good = make_snapshot(resource_id="product-a", content={"title": "A"})
    await coordinator.full_scan(TEST_SHOP_ID, [good])

    broken = make_snapshot(resource_id="product-a", content={"title": "  "})
    report = await coordinator.full_scan(TEST_SHOP_ID, [broken])

    assert report.incomplete == {"product-a": ["title"]}
    assert report.deleted == []
    async with uow_factory() as uow:
        record = await uow.resources.get("product-a")
    assert record is not None
    assert record.content_fields == {"title": "A"}


@pytest.mark.asyncio
async def test_full_scan_is_scoped_to_shop_and_types(
    coordinator: Coordinator, uow_factory: UowFactory
) -> None:
    product = make_snapshot(resource_id="product-a")
    page = make_snapshot(resource_id="page-a", resource_type="PAGE")
    foreign = make_snapshot(resource_id="product-x", shop_id=OTHER_SHOP_ID)
    await coordinator.full_scan(TEST_SHOP_ID, [product, page, foreign])
    await coordinator.full_scan(OTHER_SHOP_ID, [foreign])

    # 只扫描 PRODUCT 时，PAGE 不会被当成已删除
    report = await coordinator.full_scan(TEST_SHOP_ID, [], resource_types=["product"])
    assert report.deleted == ["product-a"]
    async with uow_factory() as uow:
        assert await uow.resources.get("page-a") is not None
        assert await uow.resources.get("product-x") is not None


@pytest.mark.asyncio
async def test_deleting_resource_cascades_to_translations(
    coordinator: Coordinator, uow_factory: UowFactory
) -> None:
    snapshot = make_snapshot(resource_id="product-a")
    await coordinator.full_scan(TEST_SHOP_ID, [snapshot])
    async with uow_factory() as uow:
        await uow.translations.upsert(
            resource_id="product-a",
            shop_id=TEST_SHOP_ID,
            language="de",
            sync_status=SyncStatus.SYNCED,
        )

    await coordinator.full_scan(TEST_SHOP_ID, [])
    async with uow_factory() as uow:
        assert await uow.translations.get("product-a", "de") is None


@pytest.mark.asyncio
async def test_incremental_scan_filters_by_updated_at(coordinator: Coordinator) -> None:
    since = utcnow()
    old = make_snapshot(resource_id="product-old", updated_at=since - timedelta(days=1))
    fresh = make_snapshot(resource_id="product-new", updated_at=since + timedelta(seconds=1))

    report = await coordinator.incremental_scan(TEST_SHOP_ID, [old, fresh], since)
    assert report.new == ["product-new"]
    assert report.deleted == []


@pytest.mark.asyncio
async def test_changes_are_published_to_stream(coordinator: Coordinator) -> None:
    sub = coordinator.tracker.changes.subscribe()
    await coordinator.full_scan(TEST_SHOP_ID, [make_snapshot(resource_id="product-a")])

    events: list[ChangeRecord] = sub.drain()
    assert [e.change_type for e in events] == [ChangeType.NEW]
    assert events[0].current_hash is not None
    sub.close()


@pytest.mark.asyncio
async def test_apply_event_merges_changed_fields(
    coordinator: Coordinator, uow_factory: UowFactory
) -> None:
    await coordinator.full_scan(
        TEST_SHOP_ID,
        [make_snapshot(resource_id="product-a", content={"title": "A", "body_html": "x"})],
    )
    change = await coordinator.apply_event(
        ChangeEvent(
            resource_id="product-a",
            resource_type="PRODUCT",
            shop_id=TEST_SHOP_ID,
            changed_fields={"body_html": "y"},
        )
    )
    assert change is not None
    assert change.change_type is ChangeType.MODIFIED
    async with uow_factory() as uow:
        record = await uow.resources.get("product-a")
    assert record is not None
    assert record.content_fields == {"title": "A", "body_html": "y"}


@pytest.mark.asyncio
async def test_apply_delete_event(coordinator: Coordinator) -> None:
    await coordinator.full_scan(TEST_SHOP_ID, [make_snapshot(resource_id="product-a")])
    event = ChangeEvent(
        resource_id="product-a",
        resource_type="PRODUCT",
        shop_id=TEST_SHOP_ID,
        deleted=True,
    )
    change = await coordinator.apply_event(event)
    assert change is not None
    assert change.change_type is ChangeType.DELETED
    assert await coordinator.apply_event(event) is None


@pytest.mark.asyncio
async def test_apply_event_for_incomplete_content_raises(coordinator: Coordinator) -> None:
    with pytest.raises(IncompleteContentError):
        await coordinator.apply_event(
            ChangeEvent(
                resource_id="product-z",
                resource_type="PRODUCT",
                shop_id=TEST_SHOP_ID,
                changed_fields={"body_html": "no title"},
            )
        )


@pytest.mark.asyncio
async def test_detect_change_and_sync_version(coordinator: Coordinator) -> None:
    tracker = coordinator.tracker
    fp1 = tracker.compute_fingerprint({"title": "A"})
    fp2 = tracker.compute_fingerprint({"title": "B"})

    detection = await tracker.detect_change("product-a", fp1)
    assert detection.is_new and not detection.is_modified

    with pytest.raises(ResourceNotFoundError):
        await tracker.sync_version("product-a", fp1)

    record = await tracker.sync_version(
        "product-a", fp1, {"title": "A"}, shop_id=TEST_SHOP_ID, resource_type="PRODUCT"
    )
    assert record.content_version == 1

    assert (await tracker.detect_change("product-a", fp1)).is_modified is False
    detection = await tracker.detect_change("product-a", fp2)
    assert detection.is_modified
    assert detection.previous_hash == fp1

    updated = await tracker.sync_version("product-a", fp2, {"title": "B"})
    assert updated.content_version == 2
    assert (await tracker.detect_change("product-a", None)).is_deleted
