# alembic/versions/0001_initial_schema.py
"""
shoptrans 数据库初始化。

表：
- resources：店铺资源与内容指纹、版本号。
- translation_sessions / session_items：可恢复的批量翻译会话及其工作项。
- translations：每个 (资源, 语言) 最多一行译文，删除资源时级联删除。
- error_logs：按 (错误指纹, 作用域) 聚合的错误日志。
- recovery_attempts：每次恢复策略的执行记录，用于窗口内的次数上限。

兼容数据库：SQLite（开发/测试）、PostgreSQL、MySQL。
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# --- Alembic 元数据 ---
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def _json_type(dialect_name: str) -> sa.types.TypeEngine:
    """PostgreSQL 使用 JSONB，其它方言使用通用 JSON。"""
    if dialect_name == "postgresql":
        return postgresql.JSONB(astext_type=sa.Text())
    return sa.JSON()


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    JSONType = _json_type(op.get_bind().dialect.name)

    op.create_table(
        "resources",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("shop_id", sa.Text(), nullable=False),
        sa.Column("resource_type", sa.Text(), nullable=False),
        sa.Column("content_fingerprint", sa.Text(), nullable=False),
        sa.Column("content_fields", JSONType, nullable=False),
        sa.Column("content_version", sa.Integer(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        _ts("last_scanned_at"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_resources"),
    )
    op.create_index("ix_resources_shop_type", "resources", ["shop_id", "resource_type"])

    op.create_table(
        "translation_sessions",
        sa.Column("shop_id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("session_type", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("languages", JSONType, nullable=False),
        sa.Column("resource_ids", JSONType, nullable=False),
        sa.Column("quality_threshold", sa.Float(), nullable=True),
        sa.Column("total_items", sa.Integer(), nullable=False),
        sa.Column("completed_count", sa.Integer(), nullable=False),
        sa.Column("skipped_count", sa.Integer(), nullable=False),
        sa.Column("errored_count", sa.Integer(), nullable=False),
        sa.Column("error_rate", sa.Float(), nullable=False),
        sa.Column("status_reason", sa.Text(), nullable=True),
        sa.Column("traces", JSONType, nullable=False),
        sa.Column("archived", sa.Boolean(), nullable=False),
        _ts("started_at"),
        _ts("paused_at"),
        _ts("completed_at"),
        _ts("last_checkpoint_at"),
        _ts("created_at", nullable=False),
        sa.Column("id", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_translation_sessions"),
    )
    op.create_index(
        "ix_translation_sessions_shop_id", "translation_sessions", ["shop_id"]
    )
    op.create_index(
        "ix_sessions_status_checkpoint",
        "translation_sessions",
        ["status", "last_checkpoint_at"],
    )

    op.create_table(
        "translations",
        sa.Column("resource_id", sa.Text(), nullable=False),
        sa.Column("shop_id", sa.Text(), nullable=False),
        sa.Column("language", sa.Text(), nullable=False),
        sa.Column("sync_status", sa.Text(), nullable=False),
        sa.Column("translated_fields", JSONType, nullable=True),
        sa.Column("source_fingerprint", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("quality_score", sa.Float(), nullable=True),
        sa.Column("skip_reason", sa.Text(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("last_attempt_at"),
        sa.Column("session_id", sa.Text(), nullable=True),
        sa.Column("id", sa.Text(), nullable=False),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        sa.ForeignKeyConstraint(
            ["resource_id"],
            ["resources.id"],
            name="fk_translations_resource_id_resources",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["translation_sessions.id"],
            name="fk_translations_session_id_translation_sessions",
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_translations"),
        sa.UniqueConstraint(
            "resource_id", "language", name="uq_translation_resource_lang"
        ),
    )
    op.create_index(
        "ix_translations_shop_status", "translations", ["shop_id", "sync_status"]
    )

    op.create_table(
        "session_items",
        sa.Column("session_id", sa.Text(), nullable=False),
        sa.Column("resource_id", sa.Text(), nullable=False),
        sa.Column("language", sa.Text(), nullable=False),
        sa.Column("state", sa.Text(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["translation_sessions.id"],
            name="fk_session_items_session_id_translation_sessions",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint(
            "session_id", "resource_id", "language", name="pk_session_items"
        ),
    )

    op.create_table(
        "error_logs",
        sa.Column("fingerprint", sa.Text(), nullable=False),
        sa.Column("scope_key", sa.Text(), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("code", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        _ts("first_seen_at", nullable=False),
        _ts("last_seen_at", nullable=False),
        sa.Column("shop_id", sa.Text(), nullable=True),
        sa.Column("resource_id", sa.Text(), nullable=True),
        sa.Column("language", sa.Text(), nullable=True),
        sa.Column("session_id", sa.Text(), nullable=True),
        sa.Column("occurrence_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        _ts("resolved_at"),
        sa.Column("id", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_error_logs"),
        sa.UniqueConstraint(
            "fingerprint", "scope_key", name="uq_error_fingerprint_scope"
        ),
    )
    op.create_index("ix_error_logs_subject", "error_logs", ["resource_id", "language"])
    op.create_index(
        "ix_error_logs_status_seen", "error_logs", ["status", "last_seen_at"]
    )

    op.create_table(
        "recovery_attempts",
        sa.Column("fingerprint", sa.Text(), nullable=False),
        sa.Column("scope_key", sa.Text(), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("strategy", sa.Text(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        _ts("created_at", nullable=False),
        sa.Column("shop_id", sa.Text(), nullable=True),
        sa.Column("resource_id", sa.Text(), nullable=True),
        sa.Column("language", sa.Text(), nullable=True),
        sa.Column("session_id", sa.Text(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("details", JSONType, nullable=False),
        sa.Column("id", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_recovery_attempts"),
    )
    op.create_index(
        "ix_recovery_attempts_window",
        "recovery_attempts",
        ["fingerprint", "shop_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_recovery_attempts_window", table_name="recovery_attempts")
    op.drop_table("recovery_attempts")
    op.drop_index("ix_error_logs_status_seen", table_name="error_logs")
    op.drop_index("ix_error_logs_subject", table_name="error_logs")
    op.drop_table("error_logs")
    op.drop_table("session_items")
    op.drop_index("ix_translations_shop_status", table_name="translations")
    op.drop_table("translations")
    op.drop_index("ix_sessions_status_checkpoint", table_name="translation_sessions")
    op.drop_index("ix_translation_sessions_shop_id", table_name="translation_sessions")
    op.drop_table("translation_sessions")
    op.drop_index("ix_resources_shop_type", table_name="resources")
    op.drop_table("resources")
