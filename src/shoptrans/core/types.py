# src/shoptrans/core/types.py
"""
本模块定义了 shoptrans 系统的核心数据类型。
这些类型是系统各层之间数据交换的契约。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

WorkKey = tuple[str, str]
"""(resource_id, language)，工作项的去重键。"""


# =========================
# 枚举
# =========================


class ResourceStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"


class SyncStatus(str, Enum):
    """翻译记录的同步状态。"""

    PENDING = "pending"
    PARTIAL = "partial"
    SYNCED = "synced"
    FAILED = "failed"

    def can_transition_to(self, target: "SyncStatus", *, requeue: bool = False) -> bool:
        """状态只能前进；显式重新入队时允许任意迁移。"""
        if requeue or self is target:
            return True
        return target in _SYNC_FORWARD[self]


_SYNC_FORWARD: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.PENDING: frozenset(
        {SyncStatus.PARTIAL, SyncStatus.SYNCED, SyncStatus.FAILED}
    ),
    SyncStatus.PARTIAL: frozenset({SyncStatus.SYNCED, SyncStatus.FAILED}),
    SyncStatus.SYNCED: frozenset(),
    SyncStatus.FAILED: frozenset(),
}


class SessionStatus(str, Enum):
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class SessionItemState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipAction(str, Enum):
    TRANSLATE = "translate"
    SKIP = "skip"
    RETRY_ELIGIBLE = "retry-eligible"


class SkipReason(str, Enum):
    """跳过决策的原因码；这些是分类结果而非错误。"""

    NEW = "NEW"
    UP_TO_DATE = "UP_TO_DATE"
    STALE = "STALE"
    LOW_QUALITY = "LOW_QUALITY"
    QUALITY_CAP_REACHED = "QUALITY_CAP_REACHED"
    RETRY_FAILED = "RETRY_FAILED"
    RETRY_LIMIT_REACHED = "RETRY_LIMIT_REACHED"
    UNSYNCED = "UNSYNCED"
    USER_REQUESTED = "USER_REQUESTED"
    FORCE_RELATED = "FORCE_RELATED"
    EMPTY_CONTENT = "EMPTY_CONTENT"
    LANGUAGE_EXCLUDED = "LANGUAGE_EXCLUDED"
    RESOURCE_TYPE_EXCLUDED = "RESOURCE_TYPE_EXCLUDED"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    EVALUATION_ERROR = "EVALUATION_ERROR"


class Override(str, Enum):
    """调用方显式覆盖，强制翻译。"""

    FORCE_RELATED = "FORCE_RELATED"
    USER_REQUESTED = "USER_REQUESTED"


class Urgency(str, Enum):
    INTERACTIVE = "interactive"
    RECOVERY = "recovery"
    BACKGROUND = "background"


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    RETRY_WAIT = "retry_wait"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


class JobEventKind(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    REQUEUED = "requeued"
    CANCELLED = "cancelled"


class ErrorKind(str, Enum):
    """诊断出的错误类别（带标签的变体）。"""

    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK = "NETWORK"
    QUALITY_VALIDATION = "QUALITY_VALIDATION"
    HTML_STRUCTURE = "HTML_STRUCTURE"
    CONTENT_TOO_LONG = "CONTENT_TOO_LONG"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    UNKNOWN = "UNKNOWN"

    @property
    def is_transient(self) -> bool:
        """基础设施类的瞬时故障，队列可直接退避重试。"""
        return self in (ErrorKind.TIMEOUT, ErrorKind.RATE_LIMIT, ErrorKind.NETWORK)


class RecoveryAction(str, Enum):
    LINEAR_BACKOFF_RETRY = "LINEAR_BACKOFF_RETRY"
    EXPONENTIAL_BACKOFF_RETRY = "EXPONENTIAL_BACKOFF_RETRY"
    PARAMETER_ADJUSTMENT = "PARAMETER_ADJUSTMENT"
    MARKUP_REPAIR = "MARKUP_REPAIR"
    CONTENT_SPLITTING = "CONTENT_SPLITTING"
    TERMINAL_SKIP = "TERMINAL_SKIP"
    NO_STRATEGY_AVAILABLE = "NO_STRATEGY_AVAILABLE"
    EXCEEDED_RETRY_LIMIT = "EXCEEDED_RETRY_LIMIT"
    RECOVERY_DISABLED = "RECOVERY_DISABLED"
    STATUS_RESET = "STATUS_RESET"
    RECOVERY_FAILED = "RECOVERY_FAILED"


class ErrorStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    ARCHIVED = "archived"


class HealthTier(str, Enum):
    HEALTHY = "HEALTHY"
    MOSTLY_HEALTHY = "MOSTLY_HEALTHY"
    CONCERNING = "CONCERNING"
    UNHEALTHY = "UNHEALTHY"


class ChangeType(str, Enum):
    NEW = "new"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"
    DELETED = "deleted"


class SubmissionMode(str, Enum):
    INLINE = "inline"
    ASYNC = "async"


# =========================
# 持久化 DTO
# =========================


class _OrmDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_orm_model(cls, orm_obj: Any):
        """从 SQLAlchemy ORM 实例安全地创建 DTO。"""
        return cls.model_validate(orm_obj, from_attributes=True)


class ResourceRecord(_OrmDTO):
    id: str
    shop_id: str
    resource_type: str
    content_fields: dict[str, Any] = Field(default_factory=dict)
    content_fingerprint: str | None = None
    content_version: int = 1
    status: ResourceStatus = ResourceStatus.PENDING
    last_scanned_at: datetime | None = None

    @property
    def content_length(self) -> int:
        return sum(len(v) for v in self.content_fields.values() if isinstance(v, str))


class TranslationRecord(_OrmDTO):
    id: str
    resource_id: str
    shop_id: str
    language: str
    translated_fields: dict[str, Any] | None = None
    source_fingerprint: str | None = None
    sync_status: SyncStatus = SyncStatus.PENDING
    retry_count: int = 0
    quality_score: float | None = None
    skip_reason: str | None = None
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    session_id: str | None = None


class SessionRecord(_OrmDTO):
    id: str
    shop_id: str
    name: str
    session_type: str
    status: SessionStatus
    languages: list[str]
    resource_ids: list[str]
    quality_threshold: float | None = None
    total_items: int = 0
    completed_count: int = 0
    skipped_count: int = 0
    errored_count: int = 0
    error_rate: float = 0.0
    status_reason: str | None = None
    traces: list[dict[str, Any]] = Field(default_factory=list)
    archived: bool = False
    created_at: datetime
    started_at: datetime | None = None
    paused_at: datetime | None = None
    completed_at: datetime | None = None
    last_checkpoint_at: datetime | None = None

    @property
    def processed(self) -> int:
        return self.completed_count + self.skipped_count + self.errored_count


class SessionItemRecord(_OrmDTO):
    session_id: str
    resource_id: str
    language: str
    state: SessionItemState
    reason: str | None = None


class ErrorLogRecord(_OrmDTO):
    id: str
    fingerprint: str
    scope_key: str
    shop_id: str | None = None
    resource_id: str | None = None
    language: str | None = None
    session_id: str | None = None
    kind: ErrorKind
    code: str
    message: str
    occurrence_count: int = 1
    status: ErrorStatus = ErrorStatus.OPEN
    first_seen_at: datetime
    last_seen_at: datetime


class RecoveryAttemptRecord(_OrmDTO):
    id: str
    fingerprint: str
    scope_key: str
    kind: ErrorKind
    strategy: RecoveryAction
    success: bool
    message: str | None = None
    created_at: datetime


# =========================
# 版本追踪
# =========================


class ResourceSnapshot(BaseModel):
    """从上游拉取的资源快照。"""

    id: str
    shop_id: str
    resource_type: str
    content: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime | None = None


class ChangeEvent(BaseModel):
    """规范化后的 webhook 变更事件。"""

    resource_id: str
    resource_type: str
    shop_id: str
    changed_fields: dict[str, Any] = Field(default_factory=dict)
    deleted: bool = False


class ChangeDetection(BaseModel):
    is_new: bool
    is_modified: bool
    is_deleted: bool
    previous_hash: str | None = None


class ChangeRecord(BaseModel):
    resource_id: str
    shop_id: str
    resource_type: str
    change_type: ChangeType
    previous_hash: str | None = None
    current_hash: str | None = None
    content_version: int | None = None
    detected_at: datetime


class ScanReport(BaseModel):
    shop_id: str
    changes: list[ChangeRecord] = Field(default_factory=list)
    unchanged: int = 0
    incomplete: dict[str, list[str]] = Field(
        default_factory=dict, description="resource_id -> 缺失字段"
    )

    def _ids(self, change_type: ChangeType) -> list[str]:
        return [c.resource_id for c in self.changes if c.change_type is change_type]

    @property
    def new(self) -> list[str]:
        return self._ids(ChangeType.NEW)

    @property
    def modified(self) -> list[str]:
        return self._ids(ChangeType.MODIFIED)

    @property
    def deleted(self) -> list[str]:
        return self._ids(ChangeType.DELETED)


# =========================
# 跳过决策
# =========================


class SkipDecision(BaseModel):
    resource_id: str
    language: str
    action: SkipAction
    reason: SkipReason
    confidence: float = Field(ge=0, le=1)
    fingerprint: str | None = None

    @property
    def should_skip(self) -> bool:
        return self.action is SkipAction.SKIP

    @property
    def key(self) -> WorkKey:
        return (self.resource_id, self.language)


class BatchProgress(BaseModel):
    session_id: str | None = None
    completed: int
    total: int
    resource_id: str
    language: str
    reason: SkipReason

    @property
    def percent(self) -> float:
        return round(self.completed / self.total * 100, 2) if self.total else 100.0


# =========================
# 工作队列
# =========================


class JobSpec(BaseModel):
    resource_id: str
    language: str
    shop_id: str
    resource_type: str = ""
    urgency: Urgency = Urgency.BACKGROUND
    content_length: int = 0
    session_ids: list[str] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> WorkKey:
        return (self.resource_id, self.language)


class JobRecord(BaseModel):
    id: str
    spec: JobSpec
    state: JobState = JobState.QUEUED
    priority: int = 0
    attempts: int = 0
    created_at: datetime
    updated_at: datetime
    last_error: str | None = None
    last_error_code: str | None = None
    cancel_requested: bool = False


class JobEvent(BaseModel):
    job_id: str
    kind: JobEventKind
    spec: JobSpec
    attempts: int = 0
    error_code: str | None = None
    error_message: str | None = None
    requeued_job_id: str | None = None


class ItemResult(BaseModel):
    resource_id: str
    language: str
    status: str = Field(description="success / failure / skipped / queued")
    reason: str | None = None
    job_id: str | None = None


class SubmissionResult(BaseModel):
    mode: SubmissionMode
    total: int
    job_ids: list[str] = Field(default_factory=list)
    items: list[ItemResult] = Field(default_factory=list)
    estimated_seconds: float | None = None
    estimated_completion_at: datetime | None = None

    def _count(self, status: str) -> int:
        return sum(1 for item in self.items if item.status == status)

    @property
    def success_count(self) -> int:
        return self._count("success")

    @property
    def failure_count(self) -> int:
        return self._count("failure")

    @property
    def skipped_count(self) -> int:
        return self._count("skipped")

    @property
    def queued_count(self) -> int:
        return self._count("queued")


class ExecutorResult(BaseModel):
    """翻译执行器的返回结果。"""

    fields: dict[str, str] = Field(default_factory=dict)
    skipped: bool = False
    reason: str | None = None
    quality_score: float | None = Field(default=None, ge=0, le=1)


# =========================
# 会话
# =========================


class ItemUpdate(BaseModel):
    resource_id: str
    language: str
    state: SessionItemState
    reason: str | None = None


class ProgressDelta(BaseModel):
    """一次检查点写入的增量；计数只能为非负数。"""

    completed: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    errored: int = Field(default=0, ge=0)
    items: list[ItemUpdate] = Field(default_factory=list)


@dataclass(frozen=True)
class SessionPartition:
    """会话工作项的已完成/待处理划分，完全由存储状态推导。"""

    done: dict[WorkKey, SkipReason] = field(default_factory=dict)
    pending: dict[WorkKey, SkipReason] = field(default_factory=dict)
    missing_resources: frozenset[str] = frozenset()


class ResumeResult(BaseModel):
    success: bool
    session_id: str
    status: SessionStatus
    issues: list[str] = Field(default_factory=list)
    enqueued: int = 0
    already_done: int = 0
    message: str = ""


class SessionReport(BaseModel):
    session: SessionRecord
    progress_percent: float
    pending_items: int
    duration_seconds: float | None = None
    recent_errors: list[ErrorLogRecord] = Field(default_factory=list)


# =========================
# 自动恢复
# =========================


class Diagnosis(BaseModel):
    kind: ErrorKind
    code: str
    message: str
    normalized_message: str
    fingerprint: str
    confidence: float = Field(ge=0, le=1)
    retryable: bool
    matched_rule: str | None = None


class RecoveryContext(BaseModel):
    shop_id: str | None = None
    resource_id: str | None = None
    language: str | None = None
    session_id: str | None = None
    job_spec: JobSpec | None = None
    operation: str = "translate"

    @property
    def scope_key(self) -> str:
        return f"{self.resource_id or '*'}:{self.language or '*'}"


class RecoveryOutcome(BaseModel):
    success: bool
    action: RecoveryAction
    diagnosis: Diagnosis
    message: str = ""
    requeued_job_id: str | None = None
    delay_seconds: float | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class BatchRecoveryOptions(BaseModel):
    session_id: str | None = None
    max_batch_size: int | None = Field(default=None, ge=1)
    resource_type: str | None = None
    language: str | None = None


class BatchRecoverySummary(BaseModel):
    shop_id: str
    total_attempted: int = 0
    recovered: int = 0
    failed: int = 0
    results: list[RecoveryOutcome] = Field(default_factory=list)


class SessionRecoveryResult(BaseModel):
    session_id: str
    success: bool
    message: str = ""
    summary: BatchRecoverySummary | None = None
    resume: ResumeResult | None = None


class HealthCheck(BaseModel):
    name: str
    healthy: bool
    value: float | None = None
    threshold: float | None = None
    message: str = ""


class HealthReport(BaseModel):
    shop_id: str
    tier: HealthTier
    checks: list[HealthCheck] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    maintenance: dict[str, int] = Field(default_factory=dict)
    checked_at: datetime

