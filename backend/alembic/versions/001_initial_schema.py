"""初始数据库架构

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# 版本标识符
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 匿名会话表
    op.create_table(
        "sessions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("identity_hash", sa.String(64), nullable=False),
        sa.Column("credit_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tier", sa.String(10), nullable=False, server_default="paid"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(), nullable=False),
        sa.Column("last_ip_hash", sa.String(64), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("daily_spend_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("daily_spend_limit_usd", sa.Float(), nullable=False, server_default="5"),
        sa.Column("daily_reset_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint("credit_balance >= 0", name="ck_sessions_balance_non_negative"),
    )
    op.create_index("ix_sessions_expires_at", "sessions", ["expires_at"])

    # 积分账本（只追加）
    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("sid", sa.String(64), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(20), nullable=False),
        sa.Column("model_id", sa.String(200), nullable=True),
        sa.Column("cost_usd", sa.Float(), nullable=True),
        sa.Column("generation_id", sa.String(100), nullable=True),
        sa.Column("invoice_id", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("sid", "generation_id", "reason", name="uq_ledger_generation_reason"),
        sa.UniqueConstraint("sid", "invoice_id", name="uq_ledger_invoice"),
    )
    op.create_index("ix_credit_ledger_sid", "credit_ledger", ["sid"])
    op.create_index("ix_credit_ledger_created_at", "credit_ledger", ["created_at"])

    # 管理员用量审计
    op.create_table(
        "admin_audit_log",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("sid", sa.String(64), nullable=False),
        sa.Column("endpoint", sa.String(50), nullable=False),
        sa.Column("model_id", sa.String(200), nullable=True),
        sa.Column("estimated_credits", sa.Integer(), nullable=True),
        sa.Column("estimated_usd", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_admin_audit_log_sid", "admin_audit_log", ["sid"])
    op.create_index("ix_admin_audit_log_created_at", "admin_audit_log", ["created_at"])

    # 限流窗口
    op.create_table(
        "rate_limit_windows",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("identifier", sa.String(200), nullable=False),
        sa.Column("endpoint", sa.String(50), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("window_start", sa.BigInteger(), nullable=False),
        sa.UniqueConstraint("identifier", "endpoint", name="uq_rate_limit_identifier_endpoint"),
    )
    op.create_index("ix_rate_limit_windows_window_start", "rate_limit_windows", ["window_start"])

    # 管理员登录失败记录
    op.create_table(
        "login_attempts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("ip_hash", sa.String(64), unique=True, nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt", sa.DateTime(), nullable=False),
        sa.Column("locked_until", sa.DateTime(), nullable=True),
        sa.Column("lockout_count", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_login_attempts_last_attempt", "login_attempts", ["last_attempt"])

    # 模型耗时统计
    op.create_table(
        "model_stats",
        sa.Column("model_id", sa.String(200), primary_key=True),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_ms", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("model_stats")
    op.drop_index("ix_login_attempts_last_attempt", table_name="login_attempts")
    op.drop_table("login_attempts")
    op.drop_index("ix_rate_limit_windows_window_start", table_name="rate_limit_windows")
    op.drop_table("rate_limit_windows")
    op.drop_index("ix_admin_audit_log_created_at", table_name="admin_audit_log")
    op.drop_index("ix_admin_audit_log_sid", table_name="admin_audit_log")
    op.drop_table("admin_audit_log")
    op.drop_index("ix_credit_ledger_created_at", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_sid", table_name="credit_ledger")
    op.drop_table("credit_ledger")
    op.drop_index("ix_sessions_expires_at", table_name="sessions")
    op.drop_table("sessions")
