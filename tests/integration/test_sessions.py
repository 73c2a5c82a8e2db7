# tests/integration/test_sessions.py
"""
会话管理器的集成测试：创建、检查点、暂停与恢复、停滞检测及终态迁移。
"""

from datetime import timedelta

import pytest
import pytest_asyncio

from shoptrans.application.coordinator import Coordinator
from shoptrans.bootstrap import shutdown_container
from shoptrans.config import ShopTransConfig
from shoptrans.core.exceptions import (
    InvalidSessionStateError,
    NoResourcesError,
    SessionNotFoundError,
)
from shoptrans.core.types import (
    JobEvent,
    JobEventKind,
    JobSpec,
    SessionItemState,
    SessionStatus,
)
from shoptrans.di import AppContainer
from shoptrans.infrastructure.db import create_all
from shoptrans.infrastructure.uow import UowFactory
from tests.helpers.factories import TEST_SHOP_ID, make_snapshot

RESOURCES = ["product-a", "product-b"]
LANGUAGES = ["de", "fr"]


@pytest_asyncio.fixture
async def seeded(ingest) -> None:
    await ingest(*(make_snapshot(resource_id=rid) for rid in RESOURCES))


@pytest.mark.asyncio
async def test_session_runs_to_completion(
    coordinator: Coordinator, seeded, uow_factory: UowFactory
) -> None:
    # 预先翻译一个工作项，会话中应被跳过
    await coordinator.translate_resources(TEST_SHOP_ID, ["product-a"], ["de"])
    await coordinator.queue.stop()

    session_id = await coordinator.start_session(TEST_SHOP_ID, RESOURCES, LANGUAGES)
    report = await coordinator.session_status(session_id)
    assert report.session.status is SessionStatus.RUNNING
    assert report.session.total_items == 4
    assert report.session.skipped_count == 1
    assert report.pending_items == 3
    assert coordinator.queue.pending_count == 3

    assert await coordinator.queue.join(timeout=5)

    report = await coordinator.session_status(session_id)
    assert report.session.status is SessionStatus.COMPLETED
    assert report.session.completed_count == 3
    assert report.progress_percent == 100.0
    assert report.pending_items == 0
    async with uow_factory() as uow:
        items = await uow.sessions.list_items(session_id)
    states = {(i.resource_id, i.language): i.state for i in items}
    assert states[("product-a", "de")] is SessionItemState.SKIPPED
    assert states[("product-b", "fr")] is SessionItemState.COMPLETED


@pytest.mark.asyncio
async def test_session_with_nothing_to_translate_completes_immediately(
    coordinator: Coordinator, seeded
) -> None:
    await coordinator.translate_resources(TEST_SHOP_ID, ["product-a"], ["de"])
    session_id = await coordinator.start_session(TEST_SHOP_ID, ["product-a"], ["de"])

    report = await coordinator.session_status(session_id)
    assert report.session.status is SessionStatus.COMPLETED
    assert report.session.status_reason == "NOTHING_TO_TRANSLATE"
    assert coordinator.queue.pending_count == 0


@pytest.mark.asyncio
async def test_start_without_known_resources_is_rejected(coordinator: Coordinator) -> None:
    with pytest.raises(NoResourcesError):
        await coordinator.start_session(TEST_SHOP_ID, ["ghost"], ["de"])
    with pytest.raises(NoResourcesError):
        await coordinator.start_session(TEST_SHOP_ID, [], ["de"])


@pytest.mark.asyncio
async def test_pause_cancels_queued_work_and_resume_requeues_pending(
    coordinator: Coordinator, seeded
) -> None:
    session_id = await coordinator.start_session(TEST_SHOP_ID, RESOURCES, LANGUAGES)
    assert coordinator.queue.pending_count == 4

    paused = await coordinator.pause_session(session_id)
    assert paused.status is SessionStatus.PAUSED
    assert paused.status_reason == "USER_REQUEST"
    assert coordinator.queue.pending_count == 0

    # 暂停期间有一项在会话外被翻译，恢复时不应重复入队
    await coordinator.translate_resources(TEST_SHOP_ID, ["product-a"], ["de"])

    result = await coordinator.resume_session(session_id)
    assert result.success
    assert result.status is SessionStatus.RUNNING
    assert result.enqueued == 3
    assert result.already_done == 1

    assert await coordinator.queue.join(timeout=5)
    report = await coordinator.session_status(session_id)
    assert report.session.status is SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_resume_is_refused_unless_paused(coordinator: Coordinator, seeded) -> None:
    session_id = await coordinator.start_session(TEST_SHOP_ID, RESOURCES, ["de"])

    result = await coordinator.resume_session(session_id)
    assert result.success is False
    assert result.status is SessionStatus.RUNNING
    assert result.issues

    await coordinator.sessions.pause(session_id)
    with pytest.raises(InvalidSessionStateError):
        await coordinator.sessions.pause(session_id)


@pytest.mark.asyncio
async def test_resume_refused_when_all_resources_are_gone(
    coordinator: Coordinator, seeded
) -> None:
    session_id = await coordinator.start_session(TEST_SHOP_ID, RESOURCES, ["de"])
    await coordinator.pause_session(session_id)
    await coordinator.full_scan(TEST_SHOP_ID, [])

    result = await coordinator.resume_session(session_id)
    assert result.success is False
    assert result.status is SessionStatus.PAUSED


@pytest.mark.asyncio
async def test_checkpoint_counts_are_bounded_by_total(
    coordinator: Coordinator, seeded
) -> None:
    session_id = await coordinator.start_session(TEST_SHOP_ID, RESOURCES, ["de"])
    updated = await coordinator.sessions.checkpoint(session_id, {"completed": 100})
    assert updated.completed_count == updated.total_items == 2

    with pytest.raises(SessionNotFoundError):
        await coordinator.sessions.checkpoint("missing", {"completed": 1})


@pytest.mark.parametrize(
    "config_overrides",
    [{"session": {"min_items_for_failure": 1, "failure_error_rate": 0.5}}],
)
@pytest.mark.asyncio
async def test_high_error_rate_fails_session(coordinator: Coordinator, seeded) -> None:
    session_id = await coordinator.start_session(TEST_SHOP_ID, RESOURCES, LANGUAGES)
    updated = await coordinator.sessions.checkpoint(session_id, {"errored": 1})
    assert updated.status is SessionStatus.FAILED
    assert updated.status_reason == "ERROR_RATE_EXCEEDED"
    assert updated.error_rate == 1.0


@pytest.mark.parametrize("config_overrides", [{"session": {"stale_after": 0}}])
@pytest.mark.asyncio
async def test_detect_stalled_pauses_sessions(coordinator: Coordinator, seeded) -> None:
    session_id = await coordinator.start_session(TEST_SHOP_ID, RESOURCES, ["de"])

    assert await coordinator.sessions.detect_stalled(TEST_SHOP_ID) == [session_id]
    report = await coordinator.session_status(session_id)
    assert report.session.status is SessionStatus.PAUSED
    assert report.session.status_reason == "STALLED"
    assert await coordinator.sessions.detect_stalled(TEST_SHOP_ID) == []


@pytest.mark.asyncio
async def test_cancel_and_archive(coordinator: Coordinator, seeded) -> None:
    session_id = await coordinator.start_session(TEST_SHOP_ID, RESOURCES, ["de"])
    with pytest.raises(InvalidSessionStateError):
        await coordinator.sessions.archive(session_id)

    cancelled = await coordinator.cancel_session(session_id)
    assert cancelled.status is SessionStatus.FAILED
    assert cancelled.status_reason == "CANCELLED"
    assert coordinator.queue.pending_count == 0
    with pytest.raises(InvalidSessionStateError):
        await coordinator.cancel_session(session_id)

    archived = await coordinator.sessions.archive(session_id)
    assert archived.archived
    assert await coordinator.sessions.list_sessions(TEST_SHOP_ID) == []
    listed = await coordinator.sessions.list_sessions(TEST_SHOP_ID, include_archived=True)
    assert [s.id for s in listed] == [session_id]


@pytest.mark.asyncio
async def test_traces_record_lifecycle(coordinator: Coordinator, seeded) -> None:
    session_id = await coordinator.start_session(TEST_SHOP_ID, RESOURCES, ["de"])
    await coordinator.pause_session(session_id)
    updated = await coordinator.sessions.add_trace(session_id, "note", "manual", {"k": 1})
    assert [t["step"] for t in updated.traces] == ["start", "pause", "note"]


def _event(
    session_id: str, resource_id: str, language: str, kind: JobEventKind, **values
) -> JobEvent:
    spec = JobSpec(
        resource_id=resource_id,
        language=language,
        shop_id=TEST_SHOP_ID,
        resource_type="PRODUCT",
        session_ids=[session_id],
    )
    return JobEvent(job_id=f"job-{resource_id}-{language}", kind=kind, spec=spec, **values)


@pytest.mark.parametrize(
    "config_overrides",
    [{"session": {"min_items_for_failure": 2, "failure_error_rate": 0.4}}],
)
@pytest.mark.asyncio
async def test_requeued_failure_does_not_count_as_error(
    coordinator: Coordinator, seeded, uow_factory: UowFactory
) -> None:
    session_id = await coordinator.start_session(TEST_SHOP_ID, RESOURCES, LANGUAGES)
    sessions = coordinator.sessions

    await sessions.on_job_finished(
        _event(
            session_id,
            "product-a",
            "de",
            JobEventKind.REQUEUED,
            attempts=3,
            error_code="TIMEOUT",
            requeued_job_id="job-retry",
        )
    )
    report = await coordinator.session_status(session_id)
    assert report.session.errored_count == 0
    assert report.session.error_rate == 0.0
    async with uow_factory() as uow:
        items = await uow.sessions.list_items(session_id)
    retried = next(
        i for i in items if (i.resource_id, i.language) == ("product-a", "de")
    )
    assert retried.state is SessionItemState.PENDING
    assert retried.reason == "TIMEOUT"

    # 重试成功后该项只计为完成一次
    for resource_id, language, kind, error_code in [
        ("product-a", "de", JobEventKind.COMPLETED, None),
        ("product-a", "fr", JobEventKind.COMPLETED, None),
        ("product-b", "de", JobEventKind.FAILED, "VALIDATION"),
        ("product-b", "fr", JobEventKind.COMPLETED, None),
    ]:
        await sessions.on_job_finished(
            _event(session_id, resource_id, language, kind, error_code=error_code)
        )

    report = await coordinator.session_status(session_id)
    assert report.session.status is SessionStatus.COMPLETED
    assert report.session.completed_count == 3
    assert report.session.errored_count == 1
    assert report.session.error_rate == 0.25


@pytest.mark.asyncio
async def test_resume_after_crash_matches_partition_from_storage(
    container: AppContainer, app_config: ShopTransConfig, seeded
) -> None:
    crashed = container.coordinator()
    session_id = await crashed.start_session(TEST_SHOP_ID, RESOURCES, LANGUAGES)
    assert crashed.queue.pending_count == 4
    # 进程退出：排队中的任务随内存一起丢失
    await shutdown_container(container)

    fresh = AppContainer()
    stale = app_config.session.model_copy(update={"stale_after": timedelta(0)})
    fresh.config.override(app_config.model_copy(update={"session": stale}))
    await create_all(fresh.db_engine())
    try:
        coordinator = fresh.coordinator()
        assert coordinator.queue.pending_count == 0
        # 崩溃期间有一项在会话外完成
        await coordinator.translate_resources(TEST_SHOP_ID, ["product-a"], ["de"])

        assert await coordinator.sessions.detect_stalled(TEST_SHOP_ID) == [session_id]
        partition = await coordinator.sessions.compute_partition(session_id)
        assert set(partition.done) == {("product-a", "de")}
        assert set(partition.pending) == {
            ("product-a", "fr"),
            ("product-b", "de"),
            ("product-b", "fr"),
        }
        assert await coordinator.sessions.compute_partition(session_id) == partition

        result = await coordinator.resume_session(session_id)
        assert result.success
        assert result.enqueued == len(partition.pending)
        assert result.already_done == len(partition.done)
        assert coordinator.queue.pending_count == len(partition.pending)

        assert await coordinator.queue.join(timeout=5)
        report = await coordinator.session_status(session_id)
        assert report.session.status is SessionStatus.COMPLETED
        assert report.pending_items == 0
    finally:
        await shutdown_container(fresh)
