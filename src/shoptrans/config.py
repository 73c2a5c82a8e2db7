# src/shoptrans/config.py
"""
shoptrans 配置（Pydantic v2 + pydantic-settings）

所有配置项均可通过 `SHOPTRANS_` 前缀的环境变量覆盖，嵌套字段使用 `__` 分隔，
例如 `SHOPTRANS_QUEUE__INLINE_THRESHOLD=20`。
"""

from __future__ import annotations

from datetime import timedelta
from typing import Literal, Optional

import langcodes
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine.url import make_url

# ===================== 子模型 =====================


class DatabaseSettings(BaseModel):
    """主库（运行期异步驱动）"""

    url: str = Field(
        default="sqlite+aiosqlite:///shoptrans.db",
        description="异步 DSN（sqlite+aiosqlite / postgresql+asyncpg / mysql+aiomysql）",
    )
    echo: bool = Field(default=False, description="SQLAlchemy echo（调试）")
    pool_size: Optional[int] = Field(default=None, ge=1)
    max_overflow: Optional[int] = Field(default=None, ge=0)
    pool_timeout: int = Field(default=30, gt=0)
    pool_pre_ping: bool = True

    @field_validator("url")
    @classmethod
    def _validate_async_driver(cls, v: str) -> str:
        allowed = {"sqlite+aiosqlite", "postgresql+asyncpg", "mysql+aiomysql"}
        try:
            drv = make_url(v).drivername.lower()
        except Exception as e:
            raise ValueError(f"非法数据库 URL：{v!r}（{e}）") from e
        if drv not in allowed:
            raise ValueError(
                f"不支持的运行期数据库驱动：{drv!r}，仅允许 {', '.join(sorted(allowed))}"
            )
        return v


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    format: Literal["console", "json"] = Field(default="console")


class CacheSettings(BaseModel):
    """跳过决策缓存。"""

    cache_type: Literal["TTL", "LRU"] = Field(default="TTL")
    maxsize: int = Field(default=5000, ge=1)
    ttl: int = Field(default=600, ge=1, description="秒；仅对 TTL 缓存生效")
    lock_pool_size: int = Field(default=64, ge=1)


class RetryPolicySettings(BaseModel):
    """队列对瞬时故障（超时/限流/网络）的自动重试策略。"""

    max_attempts: int = Field(default=3, ge=1)
    initial_backoff: float = Field(default=1.0, gt=0)
    max_backoff: float = Field(default=60.0, gt=0)

    @model_validator(mode="after")
    def _check_backoff_consistency(self) -> "RetryPolicySettings":
        if self.max_backoff < self.initial_backoff:
            raise ValueError("max_backoff 必须大于或等于 initial_backoff")
        return self


class QueueSettings(BaseModel):
    workers: int = Field(default=3, ge=1, description="并发 worker 协程数")
    inline_threshold: int = Field(
        default=10, ge=0, description="超过该数量的提交自动转为异步模式"
    )
    inline_timeout: float = Field(default=30.0, gt=0)
    batch_size: int = Field(default=10, ge=1)
    long_form_threshold: int = Field(default=2000, ge=1, description="字符数")
    max_concurrency_per_shop: int = Field(default=2, ge=1)
    shop_rate_per_second: Optional[float] = Field(
        default=None, gt=0, description="每个店铺的令牌桶补充速率；为空则不限速"
    )
    shop_rate_capacity: float = Field(default=5.0, gt=0)
    avg_item_seconds: float = Field(default=2.0, gt=0)
    batch_overhead_seconds: float = Field(default=0.5, ge=0)
    lock_pool_size: int = Field(default=128, ge=1)
    idle_poll_interval: float = Field(default=0.5, gt=0)


class SkipSettings(BaseModel):
    quality_threshold: float = Field(default=0.7, ge=0, le=1)
    max_retries: int = Field(default=3, ge=0, description="质量重译/失败重试上限")
    concurrency: int = Field(default=5, ge=1)
    chunk_size: int = Field(default=50, ge=1)
    evaluation_timeout: float = Field(default=30.0, gt=0)
    skip_empty_content: bool = True
    excluded_languages: list[str] = Field(default_factory=list)
    excluded_resource_types: list[str] = Field(default_factory=list)


class SessionSettings(BaseModel):
    stale_after: timedelta = Field(default=timedelta(minutes=30))
    max_age: timedelta = Field(default=timedelta(days=7))
    failure_error_rate: float = Field(default=0.5, gt=0, le=1)
    min_items_for_failure: int = Field(default=10, ge=1)
    resume_max_error_rate: float = Field(default=0.5, gt=0, le=1)
    max_traces: int = Field(default=200, ge=1)


class RecoverySettings(BaseModel):
    enabled: bool = True
    max_attempts: int = Field(default=3, ge=1, description="每个错误指纹在窗口内的最大恢复次数")
    window: timedelta = Field(default=timedelta(hours=1))
    linear_backoff: float = Field(default=2.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=0)
    max_backoff: float = Field(default=300.0, ge=0)
    split_max_chars: int = Field(default=4000, ge=100)
    batch_size: int = Field(default=20, ge=1)
    min_failure_age: timedelta = Field(default=timedelta(minutes=5))
    error_retention: timedelta = Field(default=timedelta(days=30))
    maintenance_limit: int = Field(default=500, ge=1)
    storage_latency_threshold_ms: float = Field(default=500.0, gt=0)
    failure_rate_threshold: float = Field(default=0.5, gt=0, le=1)
    error_volume_threshold: int = Field(default=50, ge=1)


class TrackerSettings(BaseModel):
    required_fields: dict[str, list[str]] = Field(
        default_factory=lambda: {
            "PRODUCT": ["title"],
            "COLLECTION": ["title"],
            "PAGE": ["title"],
            "ARTICLE": ["title"],
            "BLOG": ["title"],
        }
    )


class WorkerSettings(BaseModel):
    poll_interval: float = Field(default=30.0, gt=0)
    recovery_every: int = Field(default=10, ge=1, description="每 N 轮执行一次批量恢复")
    shop_ids: list[str] = Field(
        default_factory=list, description="需要批量恢复的店铺；为空则取近期会话涉及的店铺"
    )


class DebugExecutorSettings(BaseModel):
    mode: Literal["SUCCESS", "FAIL"] = Field(default="SUCCESS")
    fail_on_text: Optional[str] = Field(default=None)
    fail_code: str = Field(default="TIMEOUT")
    quality_score: Optional[float] = Field(default=None, ge=0, le=1)
    delay: float = Field(default=0.0, ge=0)


class ExecutorSettings(BaseModel):
    kind: Literal["debug"] = Field(default="debug")
    max_concurrency: int = Field(default=5, ge=1)
    rate_limit_per_second: Optional[float] = Field(default=None, gt=0)
    rate_limit_capacity: float = Field(default=10.0, gt=0)


# ===================== 顶层配置 =====================


class ShopTransConfig(BaseSettings):
    """shoptrans 核心配置模型。"""

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    retry_policy: RetryPolicySettings = Field(default_factory=RetryPolicySettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    skip: SkipSettings = Field(default_factory=SkipSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    recovery: RecoverySettings = Field(default_factory=RecoverySettings)
    tracker: TrackerSettings = Field(default_factory=TrackerSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    debug_executor: DebugExecutorSettings = Field(default_factory=DebugExecutorSettings)

    default_locale: str = "zh-CN"

    @field_validator("default_locale")
    @classmethod
    def _validate_locale(cls, v: str) -> str:
        if not langcodes.tag_is_valid(v):
            raise ValueError(f"非法语言代码: {v}")
        return v

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="SHOPTRANS_",
        case_sensitive=False,
        extra="ignore",
        env_file_encoding="utf-8",
    )
