# tests/integration/test_skip_engine.py
"""
跳过决策引擎的集成测试：针对真实存储状态的判定、批量判定与缓存。
"""

import pytest
from pytest_mock import MockerFixture

from shoptrans.application.coordinator import Coordinator
from shoptrans.core.types import (
    BatchProgress,
    Override,
    SkipAction,
    SkipReason,
    SyncStatus,
)
from shoptrans.infrastructure.uow import UowFactory
from tests.helpers.factories import TEST_SHOP_ID, make_snapshot


@pytest.mark.asyncio
async def test_lifecycle_new_up_to_date_stale(
    coordinator: Coordinator, ingest, uow_factory: UowFactory
) -> None:
    engine = coordinator.skip_engine
    await ingest(make_snapshot(resource_id="product-a", content={"title": "A"}))

    assert (await engine.evaluate("product-a", "de")).reason is SkipReason.NEW

    result = await coordinator.translate_resources(TEST_SHOP_ID, ["product-a"], ["de"])
    assert result.success_count == 1

    decision = await engine.evaluate("product-a", "de")
    assert decision.should_skip
    assert decision.reason is SkipReason.UP_TO_DATE

    await ingest(make_snapshot(resource_id="product-a", content={"title": "A2"}))
    decision = await engine.evaluate("product-a", "de")
    assert decision.action is SkipAction.TRANSLATE
    assert decision.reason is SkipReason.STALE


@pytest.mark.asyncio
async def test_evaluate_missing_resource(coordinator: Coordinator) -> None:
    decision = await coordinator.skip_engine.evaluate("nope", "de")
    assert decision.should_skip
    assert decision.reason is SkipReason.RESOURCE_NOT_FOUND


@pytest.mark.asyncio
async def test_override_forces_translation_of_synced_content(
    coordinator: Coordinator, ingest, uow_factory: UowFactory
) -> None:
    await ingest(make_snapshot(resource_id="product-a"))
    async with uow_factory() as uow:
        resource = await uow.resources.get("product-a")
        assert resource is not None
        await uow.translations.upsert(
            resource_id="product-a",
            shop_id=TEST_SHOP_ID,
            language="de",
            sync_status=SyncStatus.SYNCED,
            source_fingerprint=resource.content_fingerprint,
        )

    engine = coordinator.skip_engine
    assert (await engine.evaluate("product-a", "de")).reason is SkipReason.UP_TO_DATE
    forced = await engine.evaluate("product-a", "de", override=Override.USER_REQUESTED)
    assert forced.reason is SkipReason.USER_REQUESTED
    assert forced.action is SkipAction.TRANSLATE


@pytest.mark.asyncio
async def test_quality_threshold_per_call(
    coordinator: Coordinator, ingest, uow_factory: UowFactory
) -> None:
    await ingest(make_snapshot(resource_id="product-a"))
    async with uow_factory() as uow:
        resource = await uow.resources.get("product-a")
        assert resource is not None
        await uow.translations.upsert(
            resource_id="product-a",
            shop_id=TEST_SHOP_ID,
            language="de",
            sync_status=SyncStatus.SYNCED,
            source_fingerprint=resource.content_fingerprint,
            quality_score=0.75,
        )

    engine = coordinator.skip_engine
    assert (await engine.evaluate("product-a", "de")).reason is SkipReason.UP_TO_DATE
    strict = await engine.evaluate("product-a", "de", quality_threshold=0.9)
    assert strict.reason is SkipReason.LOW_QUALITY


@pytest.mark.asyncio
async def test_batch_evaluate_covers_every_pair_and_reports_progress(
    coordinator: Coordinator, ingest
) -> None:
    await ingest(
        make_snapshot(resource_id="product-a"),
        make_snapshot(resource_id="product-b"),
    )
    engine = coordinator.skip_engine
    sub = engine.progress.subscribe()

    decisions = await engine.batch_evaluate(
        ["product-a", "product-b", "missing"], ["de", "fr"], session_id="s-1"
    )
    assert len(decisions) == 6
    assert decisions[("missing", "de")].reason is SkipReason.RESOURCE_NOT_FOUND
    assert decisions[("product-a", "fr")].reason is SkipReason.NEW

    progress: list[BatchProgress] = sub.drain()
    assert len(progress) == 6
    assert progress[-1].completed == 6
    assert progress[-1].percent == 100.0
    assert all(p.session_id == "s-1" for p in progress)
    sub.close()


@pytest.mark.asyncio
async def test_batch_evaluate_isolates_item_failures(
    coordinator: Coordinator, ingest, mocker: MockerFixture
) -> None:
    await ingest(
        make_snapshot(resource_id="product-a"),
        make_snapshot(resource_id="product-b"),
    )
    from shoptrans.application import skip_engine as module

    real_decide = module.decide

    def flaky(resource, translation, language, *args, **kwargs):
        if resource.id == "product-b":
            raise RuntimeError("storage hiccup")
        return real_decide(resource, translation, language, *args, **kwargs)

    mocker.patch.object(module, "decide", side_effect=flaky)
    decisions = await coordinator.skip_engine.batch_evaluate(
        ["product-a", "product-b"], ["de"]
    )
    assert decisions[("product-a", "de")].reason is SkipReason.NEW
    failed = decisions[("product-b", "de")]
    assert failed.reason is SkipReason.EVALUATION_ERROR
    assert failed.action is SkipAction.TRANSLATE
    assert failed.confidence == 0.0


@pytest.mark.asyncio
async def test_decisions_are_cached_until_invalidated(
    coordinator: Coordinator, ingest, mocker: MockerFixture
) -> None:
    await ingest(make_snapshot(resource_id="product-a"))
    engine = coordinator.skip_engine
    assert engine.cache is not None
    await engine.cache.clear()

    from shoptrans.application import skip_engine as module

    spy = mocker.spy(module, "decide")
    await engine.evaluate("product-a", "de")
    await engine.evaluate("product-a", "de")
    assert spy.call_count == 1

    await engine.cache.invalidate_resource("product-a")
    await engine.evaluate("product-a", "de")
    assert spy.call_count == 2
