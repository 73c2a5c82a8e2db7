# tests/unit/test_work_queue.py
"""
针对 `shoptrans.application.work_queue.WorkQueue` 的单元测试。

使用一个假的任务处理器，验证去重合并、优先级派发、瞬时故障重试、
取消、异步提交与失败处理钩子。
"""

import asyncio
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio

from shoptrans.application.work_queue import WorkQueue
from shoptrans.core.exceptions import ExecutorError, JobNotFoundError
from shoptrans.core.types import (
    JobEvent,
    JobEventKind,
    JobRecord,
    JobState,
    SubmissionMode,
    Urgency,
    WorkKey,
)
from tests.helpers.factories import OTHER_SHOP_ID, make_config, make_spec


class FakeHandler:
    """记录调用顺序；可以按键预置要抛出的异常，或用闸门挂起执行。"""

    def __init__(self) -> None:
        self.executed: list[WorkKey] = []
        self.committed: list[WorkKey] = []
        self.failures: list[WorkKey] = []
        self.errors: dict[WorkKey, list[BaseException]] = {}
        self.gate: asyncio.Event | None = None

    async def execute(self, job: JobRecord) -> str:
        self.executed.append(job.spec.key)
        if self.gate is not None:
            await self.gate.wait()
        pending = self.errors.get(job.spec.key)
        if pending:
            raise pending.pop(0)
        return "ok"

    async def commit(self, job: JobRecord, outcome: Any) -> None:
        self.committed.append(job.spec.key)

    async def record_failure(self, job: JobRecord, error: BaseException) -> None:
        self.failures.append(job.spec.key)


class RecordingListener:
    def __init__(self) -> None:
        self.events: list[JobEvent] = []

    async def on_job_finished(self, event: JobEvent) -> None:
        self.events.append(event)


def timeout_error() -> ExecutorError:
    return ExecutorError("upstream timed out", code="TIMEOUT", retryable=True)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def handler() -> FakeHandler:
    return FakeHandler()


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def queue_overrides() -> dict[str, Any]:
    return {}


@pytest_asyncio.fixture
async def queue(
    handler: FakeHandler,
    listener: RecordingListener,
    queue_overrides: dict[str, Any],
) -> AsyncGenerator[WorkQueue, None]:
    config = make_config(queue=queue_overrides)
    work_queue = WorkQueue(config, handler)
    work_queue.add_listener(listener)
    yield work_queue
    await work_queue.stop()


# ---- 入队与去重 ----


@pytest.mark.asyncio
async def test_duplicate_keys_are_coalesced(queue: WorkQueue) -> None:
    ids = queue.enqueue_batch(
        [make_spec("p-1", "de"), make_spec("p-1", "de", session_ids=["s-1"])]
    )
    assert ids[0] == ids[1]
    again = queue.enqueue(make_spec("p-1", "de", session_ids=["s-2"]))
    assert again == ids[0]

    assert queue.pending_count == 1
    job = queue.get_job(ids[0])
    assert job.spec.session_ids == ["s-1", "s-2"]


@pytest.mark.asyncio
async def test_coalescing_raises_priority(queue: WorkQueue) -> None:
    job_id = queue.enqueue(make_spec("p-1", "de", urgency=Urgency.BACKGROUND))
    assert queue.get_job(job_id).priority == 10

    queue.enqueue(make_spec("p-1", "de", urgency=Urgency.INTERACTIVE))
    job = queue.get_job(job_id)
    assert job.priority == 30
    assert job.spec.urgency is Urgency.INTERACTIVE


@pytest.mark.asyncio
async def test_unknown_job_raises(queue: WorkQueue) -> None:
    with pytest.raises(JobNotFoundError):
        queue.get_status("missing")


# ---- 派发顺序 ----


@pytest.mark.asyncio
async def test_dispatch_follows_priority(queue: WorkQueue, handler: FakeHandler) -> None:
    queue.enqueue(make_spec("menu-1", "de", resource_type="MENU"))
    queue.enqueue(make_spec("product-1", "de", resource_type="PRODUCT"))
    queue.enqueue(
        make_spec("menu-2", "de", resource_type="MENU", urgency=Urgency.INTERACTIVE)
    )

    queue.start(workers=1)
    assert await queue.join(timeout=2)
    assert handler.executed == [
        ("menu-2", "de"),
        ("product-1", "de"),
        ("menu-1", "de"),
    ]


@pytest.mark.asyncio
async def test_long_form_goes_first_within_a_batch(
    queue: WorkQueue, handler: FakeHandler
) -> None:
    queue.enqueue_batch(
        [
            make_spec("product-1", "de", resource_type="PRODUCT"),
            make_spec("article-1", "de", resource_type="ARTICLE"),
        ]
    )
    queue.start(workers=1)
    assert await queue.join(timeout=2)
    assert handler.executed[0] == ("article-1", "de")


@pytest.mark.asyncio
@pytest.mark.parametrize("queue_overrides", [{"batch_size": 1}])
async def test_separate_batches_keep_type_priority(
    queue: WorkQueue, handler: FakeHandler
) -> None:
    queue.enqueue_batch(
        [
            make_spec("article-1", "de", resource_type="ARTICLE"),
            make_spec("product-1", "de", resource_type="PRODUCT"),
        ]
    )
    queue.start(workers=1)
    assert await queue.join(timeout=2)
    assert handler.executed[0] == ("product-1", "de")


@pytest.mark.asyncio
@pytest.mark.parametrize("queue_overrides", [{"max_concurrency_per_shop": 1}])
async def test_per_shop_concurrency_limit(queue: WorkQueue, handler: FakeHandler) -> None:
    handler.gate = asyncio.Event()
    queue.enqueue_batch(
        [
            make_spec("p-1", "de"),
            make_spec("p-2", "de"),
            make_spec("p-3", "de", shop_id=OTHER_SHOP_ID),
        ]
    )
    queue.start(workers=3)
    await wait_until(lambda: len(handler.executed) == 2)
    await asyncio.sleep(0.05)

    started = {key[0] for key in handler.executed}
    assert len(handler.executed) == 2
    assert started == {"p-1", "p-3"}

    handler.gate.set()
    assert await queue.join(timeout=2)
    assert len(handler.committed) == 3


# ---- 重试与失败 ----


def test_backoff_is_exponential_and_capped() -> None:
    queue = WorkQueue(make_config(), FakeHandler())
    assert queue.backoff_for(1) == pytest.approx(0.01)
    assert queue.backoff_for(2) == pytest.approx(0.02)
    assert queue.backoff_for(3) == pytest.approx(0.04)
    assert queue.backoff_for(10) == pytest.approx(0.05)


@pytest.mark.asyncio
async def test_transient_failure_is_retried(queue: WorkQueue, handler: FakeHandler) -> None:
    handler.errors[("p-1", "de")] = [timeout_error()]
    job_id = queue.enqueue(make_spec("p-1", "de"))

    assert await queue.join(timeout=2)
    job = queue.get_job(job_id)
    assert job.state is JobState.COMPLETED
    assert job.attempts == 2
    assert handler.failures == []


@pytest.mark.asyncio
async def test_transient_failure_gives_up_after_max_attempts(
    queue: WorkQueue, handler: FakeHandler, listener: RecordingListener
) -> None:
    handler.errors[("p-1", "de")] = [timeout_error() for _ in range(5)]
    job_id = queue.enqueue(make_spec("p-1", "de"))

    assert await queue.join(timeout=2)
    job = queue.get_job(job_id)
    assert job.state is JobState.FAILED
    assert job.attempts == 3
    assert job.last_error_code == "TIMEOUT"
    assert handler.failures == [("p-1", "de")]
    assert [e.kind for e in listener.events] == [JobEventKind.FAILED]


@pytest.mark.asyncio
async def test_non_transient_failure_is_terminal(
    queue: WorkQueue, handler: FakeHandler
) -> None:
    handler.errors[("p-1", "de")] = [
        ExecutorError("unclosed tag", code="HTML_STRUCTURE")
    ]
    job_id = queue.enqueue(make_spec("p-1", "de"))

    assert await queue.join(timeout=2)
    job = queue.get_job(job_id)
    assert job.state is JobState.FAILED
    assert job.attempts == 1
    assert job.last_error_code == "HTML_STRUCTURE"


@pytest.mark.asyncio
async def test_failure_handler_can_requeue_same_key(
    queue: WorkQueue, handler: FakeHandler, listener: RecordingListener
) -> None:
    handler.errors[("p-1", "de")] = [ExecutorError("bad html", code="HTML_STRUCTURE")]

    async def requeue(job: JobRecord, error: BaseException) -> str | None:
        return queue.enqueue(job.spec.model_copy(deep=True))

    queue.set_failure_handler(requeue)
    result = await queue.submit([make_spec("p-1", "de")])

    first = result.job_ids[0]
    item = result.items[0]
    assert queue.get_status(first) is JobState.FAILED
    assert item.job_id != first

    assert await queue.join(timeout=2)
    assert queue.get_status(item.job_id) is JobState.COMPLETED
    kinds = [e.kind for e in listener.events]
    assert kinds == [JobEventKind.REQUEUED, JobEventKind.COMPLETED]
    assert listener.events[0].requeued_job_id == item.job_id


@pytest.mark.asyncio
async def test_failure_handler_errors_are_contained(
    queue: WorkQueue, handler: FakeHandler
) -> None:
    handler.errors[("p-1", "de")] = [ExecutorError("x", code="UNKNOWN_THING")]

    async def broken(job: JobRecord, error: BaseException) -> str | None:
        raise RuntimeError("handler bug")

    queue.set_failure_handler(broken)
    job_id = queue.enqueue(make_spec("p-1", "de"))
    assert await queue.join(timeout=2)
    assert queue.get_status(job_id) is JobState.FAILED


@pytest.mark.asyncio
async def test_delayed_enqueue_waits_before_dispatch(
    queue: WorkQueue, handler: FakeHandler
) -> None:
    job_id = queue.enqueue(make_spec("p-1", "de"), delay=0.05)
    assert queue.get_status(job_id) is JobState.RETRY_WAIT

    queue.start()
    await asyncio.sleep(0.01)
    assert handler.executed == []

    assert await queue.join(timeout=2)
    assert queue.get_status(job_id) is JobState.COMPLETED


# ---- 取消 ----


@pytest.mark.asyncio
async def test_cancel_queued_job(queue: WorkQueue, listener: RecordingListener) -> None:
    job_id = queue.enqueue(make_spec("p-1", "de"))
    assert await queue.cancel(job_id) is True
    assert queue.get_status(job_id) is JobState.CANCELLED
    assert await queue.cancel(job_id) is False
    assert queue.pending_count == 0
    assert [e.kind for e in listener.events] == [JobEventKind.CANCELLED]


@pytest.mark.asyncio
async def test_cancel_active_job_discards_its_result(
    queue: WorkQueue, handler: FakeHandler
) -> None:
    handler.gate = asyncio.Event()
    job_id = queue.enqueue(make_spec("p-1", "de"))
    queue.start()
    await wait_until(lambda: handler.executed == [("p-1", "de")])

    assert await queue.cancel(job_id) is True
    handler.gate.set()
    assert await queue.join(timeout=2)
    assert queue.get_status(job_id) is JobState.CANCELLED
    assert handler.committed == []


@pytest.mark.asyncio
async def test_enqueue_after_cancelling_active_job_creates_new_job(
    queue: WorkQueue, handler: FakeHandler
) -> None:
    handler.gate = asyncio.Event()
    first = queue.enqueue(make_spec("p-1", "de"))
    queue.start()
    await wait_until(lambda: handler.executed == [("p-1", "de")])

    assert await queue.cancel(first) is True
    second = queue.enqueue(make_spec("p-1", "de"))
    assert second != first

    handler.gate.set()
    assert await queue.join(timeout=2)
    assert queue.get_status(first) is JobState.CANCELLED
    assert queue.get_status(second) is JobState.COMPLETED
    assert handler.committed == [("p-1", "de")]


@pytest.mark.asyncio
async def test_cancel_session_only_drops_exclusive_jobs(queue: WorkQueue) -> None:
    exclusive = queue.enqueue(make_spec("p-1", "de", session_ids=["s-1"]))
    shared = queue.enqueue(make_spec("p-2", "de", session_ids=["s-1", "s-2"]))

    assert await queue.cancel_session("s-1") == 1
    assert queue.get_status(exclusive) is JobState.CANCELLED
    assert queue.get_status(shared) is JobState.QUEUED
    assert queue.get_job(shared).spec.session_ids == ["s-2"]


@pytest.mark.asyncio
async def test_cancel_where_skips_active_jobs_by_default(
    queue: WorkQueue, handler: FakeHandler
) -> None:
    handler.gate = asyncio.Event()
    active = queue.enqueue(make_spec("p-1", "de"))
    queue.start(workers=1)
    await wait_until(lambda: queue.get_status(active) is JobState.ACTIVE)
    queued = queue.enqueue(make_spec("p-1", "fr"))

    cancelled = await queue.cancel_where(lambda r: r.spec.resource_id == "p-1")
    assert cancelled == [queued]
    handler.gate.set()
    assert await queue.join(timeout=2)
    assert queue.get_status(active) is JobState.COMPLETED


# ---- 提交 ----


@pytest.mark.asyncio
async def test_small_submission_runs_inline(queue: WorkQueue) -> None:
    result = await queue.submit([make_spec("p-1", "de"), make_spec("p-1", "fr")])
    assert result.mode is SubmissionMode.INLINE
    assert result.total == 2
    assert result.success_count == 2
    assert result.estimated_seconds is None


@pytest.mark.asyncio
async def test_inline_submission_reports_failures(
    queue: WorkQueue, handler: FakeHandler
) -> None:
    handler.errors[("p-1", "de")] = [ExecutorError("bad", code="HTML_STRUCTURE")]
    result = await queue.submit([make_spec("p-1", "de"), make_spec("p-2", "de")])
    statuses = {item.resource_id: (item.status, item.reason) for item in result.items}
    assert statuses["p-1"] == ("failure", "HTML_STRUCTURE")
    assert statuses["p-2"] == ("success", None)


@pytest.mark.asyncio
async def test_inline_timeout_leaves_items_queued(
    queue: WorkQueue, handler: FakeHandler
) -> None:
    handler.gate = asyncio.Event()
    result = await queue.submit([make_spec("p-1", "de")], inline_timeout=0.05)
    assert result.mode is SubmissionMode.INLINE
    assert result.queued_count == 1
    handler.gate.set()
    assert await queue.join(timeout=2)


@pytest.mark.asyncio
async def test_large_submission_switches_to_async(
    queue: WorkQueue, handler: FakeHandler
) -> None:
    specs = [make_spec(f"p-{i}", "de") for i in range(25)]
    result = await queue.submit(specs)

    assert result.mode is SubmissionMode.ASYNC
    assert result.total == 25
    assert len(set(result.job_ids)) == 25
    assert result.queued_count == 25
    # ceil(25 / 3) × 2.0 + 0.5
    assert result.estimated_seconds == pytest.approx(18.5)
    assert result.estimated_completion_at is not None

    assert await queue.join(timeout=5)
    assert len(handler.committed) == 25
