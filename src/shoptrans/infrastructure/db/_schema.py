# src/shoptrans/infrastructure/db/_schema.py
"""
ORM 模型定义，与 Alembic 初始迁移一一对应。

表：resources / translations / translation_sessions / session_items /
    error_logs / recovery_attempts
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from shoptrans.core.types import (
    ErrorStatus,
    ResourceStatus,
    SessionItemState,
    SyncStatus,
)
from shoptrans.core.utils import utcnow

from .base import Base, UTCDateTime


def _new_id() -> str:
    return str(uuid.uuid4())


class ResourceRow(Base):
    __tablename__ = "resources"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    shop_id: Mapped[str] = mapped_column(Text)
    resource_type: Mapped[str] = mapped_column(Text)
    content_fingerprint: Mapped[str] = mapped_column(Text)
    content_fields: Mapped[dict[str, Any]] = mapped_column(JSON, default_factory=dict)
    content_version: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(Text, default=ResourceStatus.PENDING.value)
    last_scanned_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default_factory=utcnow, init=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default_factory=utcnow, onupdate=utcnow, init=False
    )

    __table_args__ = (Index("ix_resources_shop_type", "shop_id", "resource_type"),)


class TranslationSessionRow(Base):
    __tablename__ = "translation_sessions"

    shop_id: Mapped[str] = mapped_column(Text, index=True)
    name: Mapped[str] = mapped_column(Text)
    session_type: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text)
    languages: Mapped[list[str]] = mapped_column(JSON)
    resource_ids: Mapped[list[str]] = mapped_column(JSON)
    quality_threshold: Mapped[Optional[float]] = mapped_column(Float, default=None)
    total_items: Mapped[int] = mapped_column(Integer, default=0)
    completed_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)
    errored_count: Mapped[int] = mapped_column(Integer, default=0)
    error_rate: Mapped[float] = mapped_column(Float, default=0.0)
    status_reason: Mapped[Optional[str]] = mapped_column(Text, default=None)
    traces: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default_factory=list)
    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, default=None)
    paused_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, default=None)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, default=None
    )
    last_checkpoint_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, default=None
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default_factory=utcnow)
    id: Mapped[str] = mapped_column(Text, primary_key=True, default_factory=_new_id)

    __table_args__ = (
        Index("ix_sessions_status_checkpoint", "status", "last_checkpoint_at"),
    )


class TranslationRow(Base):
    __tablename__ = "translations"

    resource_id: Mapped[str] = mapped_column(
        ForeignKey("resources.id", ondelete="CASCADE")
    )
    shop_id: Mapped[str] = mapped_column(Text)
    language: Mapped[str] = mapped_column(Text)
    sync_status: Mapped[str] = mapped_column(Text, default=SyncStatus.PENDING.value)
    translated_fields: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON, default=None
    )
    source_fingerprint: Mapped[Optional[str]] = mapped_column(Text, default=None)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    quality_score: Mapped[Optional[float]] = mapped_column(Float, default=None)
    skip_reason: Mapped[Optional[str]] = mapped_column(Text, default=None)
    last_error: Mapped[Optional[str]] = mapped_column(Text, default=None)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, default=None
    )
    session_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("translation_sessions.id", ondelete="SET NULL"), default=None
    )
    id: Mapped[str] = mapped_column(Text, primary_key=True, default_factory=_new_id)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default_factory=utcnow, init=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default_factory=utcnow, onupdate=utcnow, init=False
    )

    __table_args__ = (
        UniqueConstraint("resource_id", "language", name="uq_translation_resource_lang"),
        Index("ix_translations_shop_status", "shop_id", "sync_status"),
    )


class SessionItemRow(Base):
    __tablename__ = "session_items"

    session_id: Mapped[str] = mapped_column(
        ForeignKey("translation_sessions.id", ondelete="CASCADE"), primary_key=True
    )
    resource_id: Mapped[str] = mapped_column(Text, primary_key=True)
    language: Mapped[str] = mapped_column(Text, primary_key=True)
    state: Mapped[str] = mapped_column(Text, default=SessionItemState.PENDING.value)
    reason: Mapped[Optional[str]] = mapped_column(Text, default=None)


class ErrorLogRow(Base):
    __tablename__ = "error_logs"

    fingerprint: Mapped[str] = mapped_column(Text)
    scope_key: Mapped[str] = mapped_column(Text)
    kind: Mapped[str] = mapped_column(Text)
    code: Mapped[str] = mapped_column(Text)
    message: Mapped[str] = mapped_column(Text)
    first_seen_at: Mapped[datetime] = mapped_column(UTCDateTime)
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime)
    shop_id: Mapped[Optional[str]] = mapped_column(Text, default=None)
    resource_id: Mapped[Optional[str]] = mapped_column(Text, default=None)
    language: Mapped[Optional[str]] = mapped_column(Text, default=None)
    session_id: Mapped[Optional[str]] = mapped_column(Text, default=None)
    occurrence_count: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(Text, default=ErrorStatus.OPEN.value)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, default=None)
    id: Mapped[str] = mapped_column(Text, primary_key=True, default_factory=_new_id)

    __table_args__ = (
        UniqueConstraint("fingerprint", "scope_key", name="uq_error_fingerprint_scope"),
        Index("ix_error_logs_subject", "resource_id", "language"),
        Index("ix_error_logs_status_seen", "status", "last_seen_at"),
    )


class RecoveryAttemptRow(Base):
    __tablename__ = "recovery_attempts"

    fingerprint: Mapped[str] = mapped_column(Text)
    scope_key: Mapped[str] = mapped_column(Text)
    kind: Mapped[str] = mapped_column(Text)
    strategy: Mapped[str] = mapped_column(Text)
    success: Mapped[bool] = mapped_column(Boolean)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    shop_id: Mapped[Optional[str]] = mapped_column(Text, default=None)
    resource_id: Mapped[Optional[str]] = mapped_column(Text, default=None)
    language: Mapped[Optional[str]] = mapped_column(Text, default=None)
    session_id: Mapped[Optional[str]] = mapped_column(Text, default=None)
    message: Mapped[Optional[str]] = mapped_column(Text, default=None)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default_factory=dict)
    id: Mapped[str] = mapped_column(Text, primary_key=True, default_factory=_new_id)

    __table_args__ = (
        Index("ix_recovery_attempts_window", "fingerprint", "shop_id", "created_at"),
    )
