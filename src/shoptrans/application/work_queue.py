# src/shoptrans/application/work_queue.py
"""
进程内的优先级工作队列。

- 以 (resource_id, language) 去重：重复入队会合并到已有任务，必要时提升优先级。
- 入队批次按优先级排序后切成固定大小的批；批内长文本优先，整批以首项优先级派发。
- 每个店铺有并发上限与可选的令牌桶；每个键的执行与提交在分段锁内完成。
- 瞬时故障（超时/限流/网络）按指数退避重试；其余失败是终态，交给失败处理钩子。
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import math
import time
import uuid
from collections import Counter, deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import timedelta

import structlog

from shoptrans.config import ShopTransConfig
from shoptrans.core.exceptions import JobNotFoundError
from shoptrans.core.interfaces import FailureHandler, JobHandler, JobListener
from shoptrans.core.types import (
    ItemResult,
    JobEvent,
    JobEventKind,
    JobRecord,
    JobSpec,
    JobState,
    SubmissionMode,
    SubmissionResult,
    WorkKey,
)
from shoptrans.core.utils import utcnow
from shoptrans.domain.diagnosis import classify_error, error_code_of
from shoptrans.domain.priority import URGENCY_BOOST, compute_priority, is_long_form
from shoptrans.infrastructure.rate_limiter import RateLimiter
from shoptrans.observability.telemetry import Telemetry

logger = structlog.get_logger(__name__)


@dataclass
class _Job:
    record: JobRecord
    seq: int
    future: asyncio.Future[JobRecord] | None = None
    retry_handle: asyncio.TimerHandle | None = None
    requeued_as: str | None = None
    counted: bool = True


class WorkQueue:
    def __init__(
        self,
        config: ShopTransConfig,
        handler: JobHandler,
        *,
        failure_handler: FailureHandler | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._settings = config.queue
        self._retry = config.retry_policy
        self._handler = handler
        self._failure_handler = failure_handler
        self._telemetry = telemetry or Telemetry()
        self._listeners: list[JobListener] = []

        self._jobs: dict[str, _Job] = {}
        self._by_key: dict[WorkKey, str] = {}
        self._heap: list[tuple[int, int, str]] = []
        self._seq = itertools.count()
        self._active_per_shop: Counter[str] = Counter()
        self._shop_limiters: dict[str, RateLimiter] = {}
        self._key_locks = [asyncio.Lock() for _ in range(self._settings.lock_pool_size)]
        self._durations: deque[float] = deque(maxlen=200)

        self._workers: list[asyncio.Task[None]] = []
        self._stopping = False
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._unfinished = 0

    # ---- 装配 ----

    def add_listener(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    def set_failure_handler(self, handler: FailureHandler | None) -> None:
        self._failure_handler = handler

    def key_lock(self, key: WorkKey) -> asyncio.Lock:
        """返回保护某个 (资源, 语言) 写入的锁。"""
        return self._key_locks[hash(key) % len(self._key_locks)]

    # ---- 入队 ----

    def enqueue(self, spec: JobSpec, *, delay: float = 0.0) -> str:
        """入队单个任务；`delay` 大于零时任务先进入退避等待，到期后才可派发。"""
        fresh = spec.key not in self._by_key
        job_id = self.enqueue_batch([spec])[0]
        if delay > 0 and fresh:
            job = self._jobs[job_id]
            job.record.state = JobState.RETRY_WAIT
            job.retry_handle = asyncio.get_running_loop().call_later(
                delay, self._requeue_after_backoff, job
            )
        return job_id

    def enqueue_batch(self, specs: Iterable[JobSpec]) -> list[str]:
        """
        入队一批任务，按输入顺序返回任务 ID。

        与排队中或执行中的任务键重复时合并，返回已有任务的 ID。
        """
        specs = list(specs)
        slots: list[str | int] = []
        fresh: list[tuple[int, JobSpec]] = []
        positions: dict[WorkKey, int] = {}

        for spec in specs:
            existing_id = self._by_key.get(spec.key)
            if existing_id is not None:
                self._coalesce(self._jobs[existing_id], spec)
                slots.append(existing_id)
                continue
            priority = compute_priority(spec.resource_type, spec.urgency)
            position = positions.get(spec.key)
            if position is not None:
                current_priority, current = fresh[position]
                _merge_spec(current, spec)
                if priority > current_priority:
                    current.urgency = spec.urgency
                    fresh[position] = (priority, current)
                slots.append(position)
                continue
            positions[spec.key] = len(fresh)
            slots.append(len(fresh))
            fresh.append((priority, spec.model_copy(deep=True)))

        created: dict[int, str] = {}
        ordered = sorted(range(len(fresh)), key=lambda i: (-fresh[i][0], i))
        size = self._settings.batch_size
        for start in range(0, len(ordered), size):
            batch = ordered[start : start + size]
            leading = fresh[batch[0]][0]
            batch.sort(key=lambda i: not self._is_long_form(fresh[i][1]))
            for i in batch:
                created[i] = self._create(fresh[i][1], leading)

        if created:
            self._wakeup.set()
            logger.debug(
                "任务已入队", created=len(created), coalesced=len(specs) - len(created)
            )
        return [slot if isinstance(slot, str) else created[slot] for slot in slots]

    def _is_long_form(self, spec: JobSpec) -> bool:
        return is_long_form(
            spec.resource_type, spec.content_length, self._settings.long_form_threshold
        )

    def _create(self, spec: JobSpec, priority: int) -> str:
        now = utcnow()
        record = JobRecord(
            id=str(uuid.uuid4()),
            spec=spec,
            priority=priority,
            created_at=now,
            updated_at=now,
        )
        job = _Job(record=record, seq=next(self._seq))
        self._jobs[record.id] = job
        self._by_key[spec.key] = record.id
        heapq.heappush(self._heap, (-priority, job.seq, record.id))
        self._unfinished += 1
        self._idle.clear()
        return record.id

    def _coalesce(self, job: _Job, spec: JobSpec) -> None:
        record = job.record
        _merge_spec(record.spec, spec)
        if URGENCY_BOOST[spec.urgency] > URGENCY_BOOST[record.spec.urgency]:
            record.spec.urgency = spec.urgency
        raised = compute_priority(record.spec.resource_type, spec.urgency)
        if raised > record.priority:
            record.priority = raised
            record.updated_at = utcnow()
            if record.state is JobState.QUEUED:
                heapq.heappush(self._heap, (-raised, job.seq, record.id))
            logger.debug("合并重复任务并提升优先级", job_id=record.id, priority=raised)

    # ---- 查询 ----

    def _get(self, job_id: str) -> _Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_status(self, job_id: str) -> JobState:
        return self._get(job_id).record.state

    def get_job(self, job_id: str) -> JobRecord:
        return self._get(job_id).record.model_copy(deep=True)

    def jobs(self, predicate: Callable[[JobRecord], bool] | None = None) -> list[JobRecord]:
        return [
            job.record.model_copy(deep=True)
            for job in self._jobs.values()
            if predicate is None or predicate(job.record)
        ]

    @property
    def pending_count(self) -> int:
        return self._unfinished

    def estimate_completion(self, count: int) -> float:
        """预计耗时（秒）= ceil(n / workers) × 平均单项耗时 + 批处理开销。"""
        average = (
            sum(self._durations) / len(self._durations)
            if self._durations
            else self._settings.avg_item_seconds
        )
        rounds = math.ceil(count / self._settings.workers) if count else 0
        return round(rounds * average + self._settings.batch_overhead_seconds, 3)

    # ---- 取消 ----

    async def cancel(self, job_id: str) -> bool:
        """
        取消任务。排队中的任务立即终止；执行中的任务打上标记，
        其结果在提交前被丢弃。已终态的任务返回 False。
        """
        job = self._get(job_id)
        record = job.record
        if record.state.is_terminal or record.cancel_requested:
            return False
        record.cancel_requested = True
        # 执行中的任务结果会被丢弃，之后对同一个键的入队需要新建任务
        self._release_key(job)
        if record.state in (JobState.QUEUED, JobState.RETRY_WAIT):
            if job.retry_handle is not None:
                job.retry_handle.cancel()
                job.retry_handle = None
            await self._finish(job, JobState.CANCELLED, JobEventKind.CANCELLED)
        logger.info("任务已取消", job_id=job_id, state=record.state.value)
        return True

    async def cancel_where(
        self, predicate: Callable[[JobRecord], bool], *, include_active: bool = False
    ) -> list[str]:
        targets = [
            job.record.id
            for job in list(self._jobs.values())
            if not job.record.state.is_terminal
            and (include_active or job.record.state is not JobState.ACTIVE)
            and predicate(job.record)
        ]
        cancelled = [job_id for job_id in targets if await self.cancel(job_id)]
        return cancelled

    async def cancel_session(self, session_id: str) -> int:
        """
        停止为某个会话继续派发：只属于该会话的排队任务被取消，
        与其他会话共享的任务仅移除该会话标记。
        """
        cancelled = await self.cancel_where(
            lambda r: r.spec.session_ids == [session_id]
        )
        for job in self._jobs.values():
            spec = job.record.spec
            if not job.record.state.is_terminal and session_id in spec.session_ids:
                if job.record.state is not JobState.ACTIVE:
                    spec.session_ids.remove(session_id)
        return len(cancelled)

    # ---- 运行 ----

    def start(self, workers: int | None = None) -> None:
        if self._workers:
            return
        self._stopping = False
        count = workers or self._settings.workers
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"work-queue-{i}")
            for i in range(count)
        ]
        logger.info("工作队列已启动", workers=count)

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def stop(self) -> None:
        """等待 worker 完成手上的任务后退出；排队中的任务保留。"""
        if not self._workers:
            return
        self._stopping = True
        self._wakeup.set()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("工作队列已停止", pending=self._unfinished)

    async def join(self, timeout: float | None = None) -> bool:
        """等待所有未终结的任务结束；超时返回 False。"""
        if self._unfinished:
            self.start()
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def wait_for(self, job_id: str) -> JobRecord:
        job = self._get(job_id)
        if job.record.state.is_terminal:
            return job.record
        if job.future is None:
            job.future = asyncio.get_running_loop().create_future()
        return await asyncio.shield(job.future)

    async def submit(
        self, specs: Iterable[JobSpec], *, inline_timeout: float | None = None
    ) -> SubmissionResult:
        """
        提交一批任务。

        数量超过 `queue.inline_threshold` 时转为异步模式，只返回任务 ID 与预计完成时间；
        否则在 `inline_timeout` 内等待并返回逐项结果，超时未完成的条目标记为 queued。
        """
        specs = list(specs)
        job_ids = self.enqueue_batch(specs)
        self.start()

        if len(specs) > self._settings.inline_threshold:
            unique = list(dict.fromkeys(job_ids))
            seconds = self.estimate_completion(len(unique))
            return SubmissionResult(
                mode=SubmissionMode.ASYNC,
                total=len(specs),
                job_ids=job_ids,
                items=[
                    ItemResult(
                        resource_id=s.resource_id,
                        language=s.language,
                        status="queued",
                        job_id=jid,
                    )
                    for s, jid in zip(specs, job_ids)
                ],
                estimated_seconds=seconds,
                estimated_completion_at=utcnow() + timedelta(seconds=seconds),
            )

        timeout = inline_timeout or self._settings.inline_timeout
        waiters = [
            asyncio.ensure_future(self.wait_for(jid)) for jid in dict.fromkeys(job_ids)
        ]
        if waiters:
            _, pending = await asyncio.wait(waiters, timeout=timeout)
            for waiter in pending:
                waiter.cancel()
        return SubmissionResult(
            mode=SubmissionMode.INLINE,
            total=len(specs),
            job_ids=job_ids,
            items=[self._item_result(s, jid) for s, jid in zip(specs, job_ids)],
        )

    def _item_result(self, spec: JobSpec, job_id: str) -> ItemResult:
        job = self._jobs[job_id]
        record = job.record

        def item(status: str, reason: str | None = None, jid: str = job_id) -> ItemResult:
            return ItemResult(
                resource_id=spec.resource_id,
                language=spec.language,
                status=status,
                reason=reason,
                job_id=jid,
            )

        if record.state is JobState.COMPLETED:
            return item("success")
        if record.state is JobState.CANCELLED:
            return item("failure", "CANCELLED")
        if record.state is JobState.FAILED:
            if job.requeued_as:
                return item("queued", record.last_error_code, job.requeued_as)
            return item("failure", record.last_error_code)
        return item("queued")

    # ---- worker ----

    def _shop_has_capacity(self, shop_id: str) -> bool:
        if self._active_per_shop[shop_id] >= self._settings.max_concurrency_per_shop:
            return False
        rate = self._settings.shop_rate_per_second
        if rate is None:
            return True
        limiter = self._shop_limiters.get(shop_id)
        if limiter is None:
            limiter = RateLimiter(rate, self._settings.shop_rate_capacity)
            self._shop_limiters[shop_id] = limiter
        return limiter.try_acquire()

    def _next_ready(self) -> _Job | None:
        deferred: list[tuple[int, int, str]] = []
        chosen: _Job | None = None
        while self._heap:
            entry = heapq.heappop(self._heap)
            neg_priority, _, job_id = entry
            job = self._jobs.get(job_id)
            if (
                job is None
                or job.record.state is not JobState.QUEUED
                or -neg_priority != job.record.priority
            ):
                continue
            if self._shop_has_capacity(job.record.spec.shop_id):
                chosen = job
                break
            deferred.append(entry)
        for entry in deferred:
            heapq.heappush(self._heap, entry)
        return chosen

    async def _worker_loop(self, index: int) -> None:
        while not self._stopping:
            job = self._next_ready()
            if job is None:
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(
                        self._wakeup.wait(), self._settings.idle_poll_interval
                    )
                except asyncio.TimeoutError:
                    pass
                continue
            try:
                await self._run(job)
            except Exception:
                logger.exception("worker 处理任务时出现未预期异常", worker=index)

    async def _run(self, job: _Job) -> None:
        record = job.record
        spec = record.spec
        shop_id = spec.shop_id
        record.state = JobState.ACTIVE
        record.attempts += 1
        record.updated_at = utcnow()
        self._active_per_shop[shop_id] += 1
        started = time.monotonic()
        error: Exception | None = None
        retry = committed = False
        try:
            async with self.key_lock(spec.key):
                try:
                    async with self._telemetry.step(
                        "queue.job",
                        job_id=record.id,
                        resource_id=spec.resource_id,
                        language=spec.language,
                        attempt=record.attempts,
                    ):
                        outcome = await self._handler.execute(record)
                        if not record.cancel_requested:
                            await self._handler.commit(record, outcome)
                            committed = True
                except Exception as e:
                    error = e
                    retry = self._should_retry(record, e)
                    if not record.cancel_requested and not retry:
                        await self._record_failure(record, e)
        finally:
            self._active_per_shop[shop_id] -= 1
            self._wakeup.set()

        if record.cancel_requested:
            await self._finish(job, JobState.CANCELLED, JobEventKind.CANCELLED)
            return
        if committed:
            self._durations.append(time.monotonic() - started)
            await self._finish(job, JobState.COMPLETED, JobEventKind.COMPLETED)
            return

        assert error is not None
        record.last_error = str(error)
        record.last_error_code = error_code_of(error)
        if retry:
            self._schedule_retry(job)
            return
        await self._fail(job, error)

    def _should_retry(self, record: JobRecord, error: BaseException) -> bool:
        kind = classify_error(error).kind
        return kind.is_transient and record.attempts < self._retry.max_attempts

    def backoff_for(self, attempts: int) -> float:
        delay = self._retry.initial_backoff * (2 ** max(attempts - 1, 0))
        return min(delay, self._retry.max_backoff)

    def _schedule_retry(self, job: _Job) -> None:
        record = job.record
        delay = self.backoff_for(record.attempts)
        record.state = JobState.RETRY_WAIT
        record.updated_at = utcnow()
        loop = asyncio.get_running_loop()
        job.retry_handle = loop.call_later(delay, self._requeue_after_backoff, job)
        logger.info(
            "瞬时故障，退避后重试",
            job_id=record.id,
            attempt=record.attempts,
            delay=delay,
            error_code=record.last_error_code,
        )

    def _requeue_after_backoff(self, job: _Job) -> None:
        job.retry_handle = None
        record = job.record
        if record.state is not JobState.RETRY_WAIT:
            return
        record.state = JobState.QUEUED
        record.updated_at = utcnow()
        heapq.heappush(self._heap, (-record.priority, job.seq, record.id))
        self._wakeup.set()

    async def _record_failure(self, record: JobRecord, error: Exception) -> None:
        try:
            await self._handler.record_failure(record, error)
        except Exception:
            logger.exception("记录失败结果时出错", job_id=record.id)

    async def _fail(self, job: _Job, error: Exception) -> None:
        record = job.record
        # 先释放去重键，失败处理钩子才能为同一个键重新入队
        self._release_key(job)
        requeued: str | None = None
        if self._failure_handler is not None:
            try:
                requeued = await self._failure_handler(record, error)
            except Exception:
                logger.exception("失败处理钩子出错", job_id=record.id)
        if requeued == record.id:
            requeued = None
        job.requeued_as = requeued
        logger.warning(
            "任务失败",
            job_id=record.id,
            resource_id=record.spec.resource_id,
            language=record.spec.language,
            error_code=record.last_error_code,
            requeued_job_id=requeued,
        )
        await self._finish(
            job,
            JobState.FAILED,
            JobEventKind.REQUEUED if requeued else JobEventKind.FAILED,
            requeued=requeued,
        )

    def _release_key(self, job: _Job) -> None:
        key = job.record.spec.key
        if self._by_key.get(key) == job.record.id:
            del self._by_key[key]

    async def _finish(
        self,
        job: _Job,
        state: JobState,
        kind: JobEventKind,
        *,
        requeued: str | None = None,
    ) -> None:
        record = job.record
        record.state = state
        record.updated_at = utcnow()
        self._release_key(job)
        event = JobEvent(
            job_id=record.id,
            kind=kind,
            spec=record.spec.model_copy(deep=True),
            attempts=record.attempts,
            error_code=record.last_error_code if kind is not JobEventKind.COMPLETED else None,
            error_message=record.last_error if kind is not JobEventKind.COMPLETED else None,
            requeued_job_id=requeued,
        )
        for listener in list(self._listeners):
            try:
                await listener.on_job_finished(event)
            except Exception:
                logger.exception("任务监听者出错", job_id=record.id, event=kind.value)
        if job.future is not None and not job.future.done():
            job.future.set_result(record)
        if job.counted:
            job.counted = False
            self._unfinished -= 1
            if self._unfinished <= 0:
                self._unfinished = 0
                self._idle.set()
        self._wakeup.set()


def _merge_spec(target: JobSpec, incoming: JobSpec) -> None:
    for session_id in incoming.session_ids:
        if session_id not in target.session_ids:
            target.session_ids.append(session_id)
    if incoming.options:
        target.options.update(incoming.options)
    target.content_length = max(target.content_length, incoming.content_length)

